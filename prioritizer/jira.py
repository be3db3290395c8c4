"""Jira connectivity check."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from prioritizer.errors import UpstreamError, UpstreamUnavailableError, ValidationError

log = logging.getLogger(__name__)

_USER_AGENT = "Prioritizer/0.1 (+jira-check)"

_AUTH_MESSAGES = {
    401: "Unauthorized. Please verify your credentials.",
    403: "Authentication failed. Please check your email and API token.",
}


def _base_url(jira_url: str) -> str:
    url = jira_url.strip()
    return url if url.endswith("/") else f"{url}/"


def _upstream_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason_phrase or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        if body.get("message"):
            return str(body["message"])
        if body.get("errorMessages"):
            return "; ".join(str(m) for m in body["errorMessages"])
    return resp.reason_phrase or f"HTTP {resp.status_code}"


async def check_connection(
    jira_url: str, token: str, *, timeout: float = 15.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Fetch the current user with ``email:api-token`` Basic auth.

    Returns the Jira user payload. Error statuses from Jira are passed
    through; an unreachable server raises UpstreamUnavailableError.
    """
    if ":" not in token:
        raise ValidationError('Token should be in the format "email:api-token"', field="token")
    email, _, api_token = token.partition(":")
    url = f"{_base_url(jira_url)}rest/api/2/myself"

    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
            transport=transport,
        ) as client:
            resp = await client.get(url, auth=(email, api_token))
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
        raise ValidationError(f"Invalid Jira URL: {exc}", field="jira_url") from exc
    except httpx.RequestError as exc:
        log.warning("Jira unreachable at %s: %s", url, exc)
        raise UpstreamUnavailableError(
            "Could not reach Jira server. Please check the URL and try again."
        ) from exc

    if resp.status_code >= 400:
        message = _AUTH_MESSAGES.get(resp.status_code) or _upstream_message(resp)
        log.warning("Jira connection test failed with HTTP %d: %s", resp.status_code, message)
        raise UpstreamError(f"Jira API error ({resp.status_code}): {message}", status_code=resp.status_code)

    try:
        user = resp.json()
    except ValueError as exc:
        raise UpstreamError("Jira returned a non-JSON response") from exc
    log.info("Jira connection test succeeded for %s", _base_url(jira_url))
    return user
