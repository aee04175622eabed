"""Shared checklists, expenses, announcements and polls for trip groups."""
