"""Workflow entry points for a group's collaboration tools."""

from .group_session import ActionResult, ConnectionState, GroupSession

__all__ = ["ActionResult", "ConnectionState", "GroupSession"]
