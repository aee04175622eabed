from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from tripmates.core.supabase_api import SupabaseClient, SupabaseError


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None):
        self.status_code = status_code
        self._payload = payload
        self.text = "" if payload is None else json.dumps(payload)

    def json(self) -> Any:
        return self._payload


class FakeHTTPSession:
    def __init__(self, responses: List[FakeResponse]):
        self.headers: Dict[str, str] = {}
        self.responses = responses
        self.calls: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        return self.responses.pop(0)


_SESSION_PAYLOAD = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "expires_at": 4102444800,
    "user": {"id": "anon-user", "is_anonymous": True},
}


def test_sign_in_anonymously_posts_empty_signup() -> None:
    http = FakeHTTPSession([FakeResponse(200, _SESSION_PAYLOAD)])
    client = SupabaseClient("https://demo.supabase.co/", "anon-key", http_session=http)

    session = client.sign_in_anonymously()

    assert session.user.id == "anon-user"
    assert session.user.is_anonymous is True
    assert not session.is_expired()
    call = http.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://demo.supabase.co/auth/v1/signup"
    assert call["json"] == {}


def test_session_from_token_looks_up_the_user() -> None:
    http = FakeHTTPSession([FakeResponse(200, {"id": "token-user"})])
    client = SupabaseClient("https://demo.supabase.co", "anon-key", http_session=http)

    session = client.session_from_token("custom-token")

    assert session.user.id == "token-user"
    assert session.refresh_token is None
    assert http.calls[0]["headers"]["Authorization"] == "Bearer custom-token"


def test_delete_requests_representation_and_returns_rows() -> None:
    http = FakeHTTPSession([FakeResponse(200, [{"id": "row-1"}])])
    client = SupabaseClient("https://demo.supabase.co", "anon-key", http_session=http)

    rows = client.delete("session_records", access_token="tok", filters={"id": "eq.row-1"})

    assert rows == [{"id": "row-1"}]
    call = http.calls[0]
    assert call["method"] == "DELETE"
    assert call["url"] == "https://demo.supabase.co/rest/v1/session_records"
    assert call["params"] == {"id": "eq.row-1"}
    assert call["headers"]["Prefer"] == "return=representation"


def test_rest_errors_raise_supabase_error_with_status() -> None:
    http = FakeHTTPSession([FakeResponse(401, {"message": "JWT expired"})])
    client = SupabaseClient("https://demo.supabase.co", "anon-key", http_session=http)

    with pytest.raises(SupabaseError) as excinfo:
        client.select("session_records", access_token="tok")
    assert excinfo.value.status_code == 401

