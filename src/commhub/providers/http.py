"""
HTTP plumbing shared by the REST adapters.

Translates httpx responses and exceptions into the ProviderError taxonomy so
nothing httpx-specific crosses the adapter boundary.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import httpx

from commhub.providers.config import ProviderSettings, get_provider_settings
from commhub.providers.interface import (
    InvalidCredentialsError,
    ProviderNotFoundError,
    ProviderResponseError,
    RateLimitedError,
    TransientProviderError,
)
from commhub.providers.pagination import call_with_retry
from commhub.shared.logging import get_logger

logger = get_logger(__name__)

R = TypeVar("R")

# Raised by mapping code that meets a field of the wrong shape.
MAPPING_ERRORS = (AttributeError, IndexError, KeyError, TypeError, ValueError)


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After as seconds (delta-seconds or HTTP date)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 or RFC 2822 timestamp to an aware datetime; None when unparseable."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def records(body: dict[str, Any], key: str, *, provider: str) -> list[dict[str, Any]]:
    """The list stored under ``key``, keeping only JSON objects.

    Provider payload shapes change without notice; a wrong-typed list or item
    is logged and dropped instead of reaching the mapping code.
    """
    value = body.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning(
            "Unexpected list shape in provider response",
            extra={"provider": provider, "key": key, "value_type": type(value).__name__},
        )
        return []
    items = [item for item in value if isinstance(item, dict)]
    if len(items) != len(value):
        logger.warning(
            "Dropping malformed items from provider response",
            extra={"provider": provider, "key": key, "dropped": len(value) - len(items)},
        )
    return items


def record(body: dict[str, Any], key: str) -> dict[str, Any]:
    value = body.get(key)
    return value if isinstance(value, dict) else {}


def map_records(
    items: Iterable[dict[str, Any]],
    mapper: Callable[[dict[str, Any]], R],
    *,
    provider: str,
    resource: str,
) -> list[R]:
    """Apply ``mapper`` to each item, skipping (and logging) items it cannot map."""
    mapped: list[R] = []
    for raw in items:
        try:
            mapped.append(mapper(raw))
        except MAPPING_ERRORS as e:
            logger.warning(
                "Skipping unparseable provider record",
                extra={
                    "provider": provider,
                    "resource": resource,
                    "record_id": raw.get("id") if isinstance(raw, dict) else None,
                    "error": repr(e),
                },
            )
    return mapped


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"text": response.text[:500]}
    return body if isinstance(body, dict) else {"body": body}


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Map a non-2xx response onto the ProviderError taxonomy."""
    status = response.status_code
    if status < 400:
        return

    body = _error_body(response)
    error_code = str(body.get("code", status))
    message = f"{provider} API error: {status}"

    if status == 429:
        raise RateLimitedError(
            message,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            error_code=error_code,
            provider_response=body,
        )
    if status in (401, 403):
        raise InvalidCredentialsError(
            f"{provider} rejected the credentials",
            error_code=error_code,
            provider_response=body,
            status_code=status,
        )
    if status == 404:
        raise ProviderNotFoundError(
            message, error_code=error_code, provider_response=body, status_code=status
        )
    if status >= 500:
        raise TransientProviderError(
            message, error_code=error_code, provider_response=body, status_code=status
        )
    raise ProviderResponseError(
        message, error_code=error_code, provider_response=body, status_code=status
    )


class HttpProvider:
    """Base for adapters that talk to a provider REST API via httpx.

    An injected client is reused (tests pass one built on httpx.MockTransport);
    otherwise every operation opens and closes its own client.
    """

    provider_name = "provider"

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Any = None,
    ) -> None:
        self._settings = settings or get_provider_settings()
        self._http_client = http_client
        self._sleep = sleep

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.http_timeout_seconds)
        ) as client:
            yield client

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{self.provider_name} request timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransientProviderError(f"{self.provider_name} request failed: {e}") from e
        raise_for_provider_status(response, self.provider_name)
        return response

    async def _request_json(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        retry: bool = True,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Issue a request and decode a JSON object, retrying 429s when asked."""

        async def _once() -> dict[str, Any]:
            response = await self._send(client, method, url, **kwargs)
            if response.status_code == 204 or not response.content:
                return {}
            try:
                body = response.json()
            except ValueError as e:
                raise ProviderResponseError(
                    f"{self.provider_name} returned a non-JSON body",
                    status_code=response.status_code,
                ) from e
            if not isinstance(body, dict):
                raise ProviderResponseError(
                    f"{self.provider_name} returned an unexpected body shape",
                    provider_response={"body": body},
                    status_code=response.status_code,
                )
            return body

        if not retry:
            return await _once()
        return await call_with_retry(
            _once,
            max_attempts=self._settings.rate_limit_max_attempts,
            fallback_delay=self._settings.rate_limit_fallback_delay_seconds,
            sleep=self._sleep,
            label=f"{self.provider_name} {method} {url}",
        )
