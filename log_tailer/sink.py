"""Supabase (PostgREST) sink for log records and row updates."""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class SinkError(RuntimeError):
    """A request to the store failed."""


@dataclass(slots=True)
class SinkResult:
    """Outcome of one store call: either data or an error message."""

    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteSink(Protocol):
    async def insert(self, table: str, row: dict) -> SinkResult: ...


class SupabaseSink:
    """Async PostgREST client authenticated with the caller's JWT."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        jwt: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not url:
            raise SinkError("SUPABASE_URL is not set")
        if not anon_key:
            raise SinkError("SUPABASE_ANON_KEY is not set")
        if not jwt:
            raise SinkError("JWT is not set")
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/") + "/rest/v1",
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "apikey": anon_key,
                "Authorization": f"Bearer {jwt}",
                "Content-Type": "application/json",
                "Prefer": "return=representation",
            },
            transport=transport,
        )

    async def insert(self, table: str, row: dict) -> SinkResult:
        """Insert one row. Failures are returned, never raised."""
        logger.debug("Inserting into %s: %s", table, row)
        return await self._request("POST", f"/{table}", json=row)

    async def update(
        self,
        table: str,
        row_id: str,
        values: dict,
        condition: Optional[tuple[str, str]] = None,
    ) -> SinkResult:
        """Update the row with the given id, optionally also matching col=value."""
        params = {"id": f"eq.{row_id}"}
        if condition is not None:
            column, value = condition
            params[column] = f"eq.{value}"
        return await self._request("PATCH", f"/{table}", json=values, params=params)

    async def _request(self, method: str, path: str, **kwargs) -> SinkResult:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            logger.debug("Timeout on %s %s", method, path)
            return SinkResult(error="timeout")
        except httpx.HTTPError as exc:
            logger.debug("HTTP error on %s %s: %s", method, path, exc)
            return SinkResult(error=str(exc) or exc.__class__.__name__)

        if response.is_success:
            data = response.json() if response.content else None
            return SinkResult(data=data)
        return SinkResult(error=_error_message(response))

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SupabaseSink":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def _error_message(response: httpx.Response) -> str:
    """Pull PostgREST's error message out of a failed response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return f"HTTP {response.status_code}: {body['message']}"
    return f"HTTP {response.status_code}"
