"""Tests for the Jira connection check, using httpx mock transports."""
from __future__ import annotations

import asyncio
import base64

import httpx
import pytest

from prioritizer import jira
from prioritizer.errors import UpstreamError, UpstreamUnavailableError, ValidationError

TOKEN = "pm@example.com:api-token-123"


def _check(url: str, token: str, handler):
    return asyncio.run(jira.check_connection(url, token, transport=httpx.MockTransport(handler)))


class TestCheckConnection:
    def test_success_uses_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"displayName": "PM", "emailAddress": "pm@example.com"})

        user = _check("https://acme.atlassian.net", TOKEN, handler)
        assert user["displayName"] == "PM"
        assert seen["url"] == "https://acme.atlassian.net/rest/api/2/myself"
        expected = base64.b64encode(TOKEN.encode()).decode()
        assert seen["auth"] == f"Basic {expected}"

    def test_trailing_slash_is_not_doubled(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            return httpx.Response(200, json={})

        _check("https://acme.atlassian.net/", TOKEN, handler)
        assert seen["path"] == "/rest/api/2/myself"

    def test_token_without_colon(self):
        with pytest.raises(ValidationError):
            _check("https://acme.atlassian.net", "just-a-token", lambda r: httpx.Response(200))

    @pytest.mark.parametrize("status, fragment", [
        (401, "Unauthorized"),
        (403, "Authentication failed"),
    ])
    def test_auth_failures_pass_status(self, status, fragment):
        with pytest.raises(UpstreamError) as excinfo:
            _check("https://acme.atlassian.net", TOKEN, lambda r: httpx.Response(status))
        assert excinfo.value.status_code == status
        assert fragment in excinfo.value.message

    def test_other_errors_pass_upstream_message(self):
        def handler(request):
            return httpx.Response(404, json={"errorMessages": ["Site not found"]})

        with pytest.raises(UpstreamError) as excinfo:
            _check("https://acme.atlassian.net", TOKEN, handler)
        assert excinfo.value.status_code == 404
        assert "Site not found" in excinfo.value.message

    def test_unreachable_is_503(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamUnavailableError) as excinfo:
            _check("https://acme.atlassian.net", TOKEN, handler)
        assert excinfo.value.status_code == 503


class TestJiraEndpoint:
    def test_bad_token_format_is_400(self, client):
        resp = client.post("/api/jira/test", json={"jira_url": "https://acme.atlassian.net", "token": "nocolon"})
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_missing_fields_is_422(self, client):
        assert client.post("/api/jira/test", json={"jira_url": "https://acme.atlassian.net"}).status_code == 422

    def test_upstream_status_passes_through(self, client, monkeypatch):
        async def fake_check(url, token, **kwargs):
            raise UpstreamError("Jira API error (403): denied", status_code=403)

        monkeypatch.setattr(jira, "check_connection", fake_check)
        resp = client.post("/api/jira/test", json={"jira_url": "https://x", "token": "a:b"})
        assert resp.status_code == 403
        assert resp.json()["error"] == "Upstream error"

    def test_success_envelope(self, client, monkeypatch):
        async def fake_check(url, token, **kwargs):
            return {"displayName": "PM"}

        monkeypatch.setattr(jira, "check_connection", fake_check)
        resp = client.post("/api/jira/test", json={"jira_url": "https://x", "token": "a:b"})
        assert resp.json() == {
            "success": True, "data": {"displayName": "PM"}, "message": "Successfully connected to Jira!",
        }
