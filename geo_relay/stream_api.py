from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import Any, AsyncIterator, Sequence

import httpx
import requests

RULES_ENDPOINT = "/2/tweets/search/stream/rules"
STREAM_ENDPOINT = "/2/tweets/search/stream"
DEFAULT_USER_AGENT = "geo-relay"

# Filtered stream expansions needed to place a post and name its author.
STREAM_PARAMS: dict[str, str] = {
    "expansions": "geo.place_id,author_id",
    "place.fields": "contained_within,country,country_code,full_name,geo,id,name,place_type",
    "user.fields": "username,name",
    "tweet.fields": "created_at,entities,geo,text",
}

AUTH_STATUS_CODES = (401, 403)


class StreamApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamAuthError(StreamApiError):
    pass


@dataclass(frozen=True)
class StreamRule:
    value: str
    tag: str | None = None

    def to_payload(self) -> dict[str, str]:
        payload = {"value": self.value}
        if self.tag:
            payload["tag"] = self.tag
        return payload


def _error_for_status(status_code: int, detail: str) -> StreamApiError:
    message = f"upstream returned HTTP {status_code}: {detail[:500]}"
    if status_code in AUTH_STATUS_CODES:
        return StreamAuthError(message, status_code=status_code)
    return StreamApiError(message, status_code=status_code)


def _check_response(resp: requests.Response) -> dict[str, Any]:
    if resp.status_code >= 400:
        raise _error_for_status(resp.status_code, resp.text)
    try:
        payload = resp.json()
    except ValueError as exc:
        raise StreamApiError(f"invalid JSON from upstream: {exc}") from exc
    if not isinstance(payload, dict):
        raise StreamApiError("unexpected upstream payload shape")
    return payload


class StreamApiClient:
    """Filtered-stream client.

    Rule management is blocking (``requests``) and meant to run off the event
    loop; the stream itself is consumed with ``httpx`` async streaming.
    """

    def __init__(
        self,
        *,
        base_url: str,
        bearer_token: str,
        timeout: float | None = None,
        connect_timeout: float | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not bearer_token:
            raise ValueError("bearer_token is required")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._headers = {
            "Authorization": f"Bearer {bearer_token}",
            "User-Agent": user_agent,
        }
        self._session = session or requests.Session()
        self._transport = transport
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def list_rules(self) -> list[dict[str, Any]]:
        resp = self._session.get(
            self._base_url + RULES_ENDPOINT,
            headers=self._headers,
            timeout=self._timeout,
        )
        payload = _check_response(resp)
        data = payload.get("data") or []
        return [rule for rule in data if isinstance(rule, dict)]

    def delete_rules(self, rule_ids: Sequence[str]) -> dict[str, Any]:
        return self._post_rules({"delete": {"ids": [str(rule_id) for rule_id in rule_ids]}})

    def add_rules(self, rules: Sequence[StreamRule]) -> list[dict[str, Any]]:
        payload = self._post_rules({"add": [rule.to_payload() for rule in rules]})
        data = payload.get("data") or []
        if payload.get("errors") and not data:
            raise StreamApiError(f"rule add rejected: {payload['errors']}")
        return [rule for rule in data if isinstance(rule, dict)]

    def _post_rules(self, body: dict[str, Any]) -> dict[str, Any]:
        resp = self._session.post(
            self._base_url + RULES_ENDPOINT,
            json=body,
            headers=self._headers,
            timeout=self._timeout,
        )
        return _check_response(resp)

    @contextlib.asynccontextmanager
    async def open_stream(
        self,
        params: dict[str, str] | None = None,
    ) -> AsyncIterator[AsyncIterator[str]]:
        """Open the filtered stream and yield an iterator over its lines.

        Leaving the context closes the upstream HTTP response.
        """
        timeout = httpx.Timeout(self._connect_timeout, read=None)
        client_kwargs: dict[str, Any] = {"timeout": timeout, "headers": self._headers}
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        async with httpx.AsyncClient(**client_kwargs) as http:
            async with http.stream(
                "GET",
                self._base_url + STREAM_ENDPOINT,
                params=params if params is not None else STREAM_PARAMS,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise _error_for_status(
                        response.status_code, body.decode("utf-8", errors="replace")
                    )
                yield response.aiter_lines()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._session.close()


def replace_stream_rules(client: StreamApiClient, rules: Sequence[StreamRule]) -> list[dict[str, Any]]:
    existing = client.list_rules()
    rule_ids = [str(rule["id"]) for rule in existing if rule.get("id") is not None]
    if rule_ids:
        client.delete_rules(rule_ids)
    return client.add_rules(rules)
