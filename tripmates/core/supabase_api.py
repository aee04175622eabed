"""Minimal Supabase REST API client used by the Tripmates sync layer."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional

import requests


class SupabaseError(RuntimeError):
    """Raised when a Supabase API request fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class SupabaseUser:
    """Supabase authenticated user representation."""

    id: str
    is_anonymous: bool
    raw: Mapping[str, Any]


@dataclass(slots=True)
class SupabaseSession:
    """Authentication session details returned by Supabase."""

    access_token: str
    refresh_token: Optional[str]
    token_type: str
    expires_at: Optional[int]
    user: SupabaseUser

    def is_expired(self, *, safety_seconds: int = 60) -> bool:
        """Return ``True`` if the token has expired or is close to expiring."""

        if not self.expires_at:
            return False
        return time.time() >= (self.expires_at - safety_seconds)


class SupabaseClient:
    """Very small wrapper around Supabase's REST and auth HTTP APIs."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        http_session: Optional[requests.Session] = None,
        timeout: float = 30,
    ) -> None:
        self._url = url.rstrip("/")
        self._anon_key = anon_key
        self._timeout = timeout
        self._session = http_session or requests.Session()
        self._session.headers.setdefault("apikey", anon_key)

    @property
    def url(self) -> str:
        return self._url

    @property
    def anon_key(self) -> str:
        return self._anon_key

    def _auth_request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Mapping[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        endpoint = f"{self._url}/auth/v1{path}"
        headers = {"Content-Type": "application/json", "apikey": self._anon_key}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        response = self._session.request(
            method,
            endpoint,
            json=payload,
            headers=headers,
            timeout=self._timeout,
        )
        if response.status_code >= 400:
            raise SupabaseError(
                f"Supabase auth request failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )
        data: Dict[str, Any] = response.json()
        return data

    def _rest_request(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        params: Optional[Mapping[str, Any]] = None,
        payload: Optional[Any] = None,
        extra_headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        endpoint = f"{self._url}/rest/v1/{path.lstrip('/')}"
        headers: MutableMapping[str, str] = {
            "Authorization": f"Bearer {access_token}",
            "apikey": self._anon_key,
        }
        if extra_headers:
            headers.update(extra_headers)
        if method.upper() in {"POST", "PATCH", "PUT"}:
            headers.setdefault("Content-Type", "application/json")
        response = self._session.request(
            method,
            endpoint,
            params=params,
            json=payload,
            headers=headers,
            timeout=self._timeout,
        )
        if response.status_code >= 400:
            raise SupabaseError(
                f"Supabase REST request failed ({response.status_code}) for {path}: {response.text}",
                status_code=response.status_code,
            )
        if response.text:
            try:
                return response.json()
            except ValueError:
                return response.text
        return None

    @staticmethod
    def _parse_user(user_data: Mapping[str, Any]) -> SupabaseUser:
        user_id = user_data.get("id")
        if not user_id:
            raise SupabaseError("Supabase auth response missing user id")
        return SupabaseUser(
            id=str(user_id),
            is_anonymous=bool(user_data.get("is_anonymous", False)),
            raw=dict(user_data),
        )

    @classmethod
    def _parse_session(cls, payload: Mapping[str, Any]) -> SupabaseSession:
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        if not access_token or not refresh_token:
            raise SupabaseError("Supabase auth response missing access or refresh token")
        return SupabaseSession(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=payload.get("token_type", "bearer"),
            expires_at=payload.get("expires_at"),
            user=cls._parse_user(payload.get("user") or {}),
        )

    def sign_in_anonymously(self) -> SupabaseSession:
        """Create a fresh anonymous user and return its session."""

        data = self._auth_request("POST", "/signup", payload={})
        return self._parse_session(data)

    def session_from_token(self, access_token: str) -> SupabaseSession:
        """Resolve the user behind an externally issued access token."""

        data = self._auth_request("GET", "/user", access_token=access_token)
        return SupabaseSession(
            access_token=access_token,
            refresh_token=None,
            token_type="bearer",
            expires_at=None,
            user=self._parse_user(data),
        )

    def refresh_session(self, refresh_token: str) -> SupabaseSession:
        payload = {"refresh_token": refresh_token}
        data = self._auth_request("POST", "/token?grant_type=refresh_token", payload=payload)
        return self._parse_session(data)

    def select(
        self,
        table: str,
        *,
        access_token: str,
        filters: Optional[Mapping[str, Any]] = None,
        select: Optional[str] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if filters:
            params.update(filters)
        if select:
            params["select"] = select
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        result = self._rest_request("GET", table, access_token=access_token, params=params)
        if isinstance(result, list):
            return result
        return []

    def insert(
        self,
        table: str,
        rows: Iterable[Mapping[str, Any]],
        *,
        access_token: str,
        returning: bool = True,
    ) -> List[Dict[str, Any]]:
        payload = list(rows)
        if not payload:
            return []
        headers = {"Prefer": "return=representation"} if returning else None
        result = self._rest_request(
            "POST",
            table,
            access_token=access_token,
            payload=payload,
            extra_headers=headers,
        )
        if isinstance(result, list):
            return result
        return []

    def update(
        self,
        table: str,
        *,
        access_token: str,
        filters: Mapping[str, Any],
        values: Mapping[str, Any],
        returning: bool = False,
    ) -> List[Dict[str, Any]]:
        prefer = "return=representation" if returning else None
        headers = {"Prefer": prefer} if prefer else None
        result = self._rest_request(
            "PATCH",
            table,
            access_token=access_token,
            params=dict(filters),
            payload=dict(values),
            extra_headers=headers,
        )
        if isinstance(result, list):
            return result
        return []

    def delete(
        self,
        table: str,
        *,
        access_token: str,
        filters: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        """Delete matching rows and return the rows that were removed."""

        result = self._rest_request(
            "DELETE",
            table,
            access_token=access_token,
            params=dict(filters),
            extra_headers={"Prefer": "return=representation"},
        )
        if isinstance(result, list):
            return result
        return []


__all__ = ["SupabaseClient", "SupabaseSession", "SupabaseUser", "SupabaseError"]
