from __future__ import annotations

import asyncio
import sys
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .config import settings

# Error bodies are kept for diagnostics only; never hold on to more than this.
ERROR_BODY_LIMIT = 1000


class UpstreamError(RuntimeError):
    """An upstream call that did not yield a usable response."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        content_type: str = "",
        body: str = "",
        headers: Optional[Dict[str, str]] = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.content_type = content_type
        self.body = body[:ERROR_BODY_LIMIT]
        self.headers = dict(headers or {})
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "message": self.message,
            "lastError": {
                "status": self.status,
                "contentType": self.content_type,
                "responseText": self.body,
                "headers": self.headers,
            },
            "retries": self.attempts,
        }


class UpstreamStatusError(UpstreamError):
    """Non-retryable non-2xx status; raised on the attempt that received it."""


class RetryExhaustedError(UpstreamError):
    """Every attempt failed with a retryable fault."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.cause is not None:
            out["lastError"]["exception"] = f"{type(self.cause).__name__}: {self.cause}"
        return out


def is_retryable(response: httpx.Response) -> bool:
    """5xx statuses and HTML error pages are worth another attempt."""
    content_type = (response.headers.get("content-type") or "").lower()
    return response.status_code >= 500 or "text/html" in content_type


async def _read_error(response: httpx.Response) -> str:
    """Read at most enough of an error body for diagnostics, then close it."""
    raw = bytearray()
    try:
        async for chunk in response.aiter_bytes():
            raw.extend(chunk)
            # 4 bytes per character covers any UTF-8 text
            if len(raw) >= ERROR_BODY_LIMIT * 4:
                break
    except Exception as e:
        print(f"[proxy] could not read upstream error body: {type(e).__name__}: {e}", file=sys.stderr)
    finally:
        await response.aclose()
    return bytes(raw).decode("utf-8", errors="ignore")[:ERROR_BODY_LIMIT]


async def fetch_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    stream: bool = False,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **request_kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying transport errors, 5xx and HTML error pages.

    Attempt ``n`` that fails (other than the last) is followed by a pause of
    ``base_delay * n`` seconds. Any other non-2xx status is terminal and raises
    :class:`UpstreamStatusError` straight away. When every attempt fails,
    :class:`RetryExhaustedError` carries what the last attempt saw.

    With ``stream=True`` the successful response body is left unread; the
    caller owns the response and must close it.
    """
    attempts = max(1, int(max_attempts if max_attempts is not None else settings.max_retries))
    delay = settings.retry_delay if base_delay is None else base_delay
    last: Dict[str, Any] = {}
    last_exc: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            request = client.build_request(method, url, **request_kwargs)
            response = await client.send(request, stream=stream)
        except httpx.TransportError as e:
            last_exc = e
            last = {}
            print(f"[proxy] {method} {url} attempt {attempt}/{attempts} failed: {type(e).__name__}: {e}", file=sys.stderr)
        else:
            content_type = response.headers.get("content-type") or ""
            if is_retryable(response):
                body = await _read_error(response)
                last_exc = None
                last = {
                    "status": response.status_code,
                    "content_type": content_type,
                    "body": body,
                    "headers": dict(response.headers),
                }
                print(
                    f"[proxy] {method} {url} attempt {attempt}/{attempts} got retryable status {response.status_code} ({content_type or 'no content-type'})",
                    file=sys.stderr,
                )
            elif response.status_code >= 300:
                body = await _read_error(response)
                raise UpstreamStatusError(
                    f"Upstream returned HTTP {response.status_code}",
                    status=response.status_code,
                    content_type=content_type,
                    body=body,
                    headers=dict(response.headers),
                    attempts=attempt,
                )
            else:
                return response

        if attempt < attempts:
            await sleep(delay * attempt)

    raise RetryExhaustedError("All retry attempts failed", cause=last_exc, attempts=attempts, **last)
