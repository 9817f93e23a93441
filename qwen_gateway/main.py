from __future__ import annotations

import json
import sys
import time
import uuid
from collections import deque
from typing import Any, AsyncIterator, Dict, Optional, Set

import httpx
from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from .config import settings
from .images import ImageUploadError, convert_messages, has_inline_images
from .models_cache import ModelListCache
from .retry import UpstreamError, fetch_with_retry
from .schemas.openai import ChatCompletionRequest, ErrorResponse
from .stream import QueueSink, StreamSession


app = FastAPI(title="Qwen Delta Gateway")
app.state.models_cache = ModelListCache(settings.models_cache_ttl)

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}

# Shared HTTP client (HTTP/1.1 + optional HTTP/2) with connection pooling
_HTTPX_CLIENT: Optional[httpx.AsyncClient] = None


def _get_httpx_client() -> httpx.AsyncClient:
    global _HTTPX_CLIENT
    if _HTTPX_CLIENT is None:
        limits = httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        )
        try:
            _HTTPX_CLIENT = httpx.AsyncClient(http2=settings.http2, limits=limits)
        except ImportError:
            # If http2 extras not installed, gracefully fall back to HTTP/1.1
            _HTTPX_CLIENT = httpx.AsyncClient(http2=False, limits=limits)
    return _HTTPX_CLIENT


_RECENT = deque(maxlen=64)
# Sessions still running; holds a reference so their tasks are not collected
_SESSIONS: Set[StreamSession] = set()


def get_models_cache(request: Request) -> ModelListCache:
    return request.app.state.models_cache


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    content = ErrorResponse(message=message).model_dump()
    content.update(extra)
    return JSONResponse(status_code=status, content=content, headers=NO_CACHE_HEADERS)


def _unauthorized() -> Response:
    return Response("Unauthorized", status_code=401, media_type="text/plain", headers=NO_CACHE_HEADERS)


def _has_bearer(authorization: Optional[str]) -> bool:
    if not authorization or not authorization.startswith("Bearer "):
        return False
    return bool(authorization[len("Bearer "):].strip())


def _upstream_error_response(e: UpstreamError) -> Response:
    # Truncated upstream bodies only appear inside the error envelope
    return JSONResponse(status_code=500, content=e.to_dict(), headers=NO_CACHE_HEADERS)


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    authorization: str | None = Header(default=None, alias="authorization"),
):
    _rec: Dict[str, Any] = {"phase": "start", "ts": int(time.time())}
    if not _has_bearer(authorization):
        if settings.debug:
            print("[proxy] rejected request without bearer token", file=sys.stderr)
        return _unauthorized()

    try:
        body = await request.json()
    except Exception:
        return _error(400, "Invalid JSON body")
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")
    try:
        parsed = ChatCompletionRequest.model_validate(body)
    except Exception as e:
        return _error(400, str(e))
    if not parsed.model:
        return _error(400, "Model parameter is required")
    _rec["model"] = parsed.model
    _rec["stream"] = bool(parsed.stream)

    client = _get_httpx_client()
    try:
        messages = parsed.messages
        if has_inline_images(messages):
            messages = await convert_messages(messages, client, authorization)
        payload = parsed.upstream_payload(messages)
        headers = {"Content-Type": "application/json", "Authorization": authorization}
        if settings.debug:
            print(
                "[proxy] upstream request:",
                json.dumps({"url": settings.chat_completions_url, "headers": settings.redact(headers)}, ensure_ascii=False),
                file=sys.stderr,
            )
        upstream = await fetch_with_retry(
            client,
            "POST",
            settings.chat_completions_url,
            json=payload,
            headers=headers,
            stream=True,
            timeout=httpx.Timeout(settings.upstream_timeout),
        )
    except UpstreamError as e:
        print(f"[proxy] upstream error: {e.message} (status={e.status}, attempts={e.attempts})", file=sys.stderr)
        _rec.update({"phase": "upstream_error", "upstream_status": e.status, "message": e.message})
        _RECENT.append(_rec)
        return _upstream_error_response(e)
    except ImageUploadError as e:
        _rec.update({"phase": "image_upload_error", "message": str(e)})
        _RECENT.append(_rec)
        return _error(500, str(e))
    except Exception as e:
        print(f"[proxy] request failed: {type(e).__name__}: {e}", file=sys.stderr)
        _rec.update({"phase": "exception", "message": str(e), "exception_type": type(e).__name__})
        _RECENT.append(_rec)
        return _error(500, str(e) or type(e).__name__)

    _rec["upstream_status"] = upstream.status_code

    if not parsed.stream:
        try:
            raw = await upstream.aread()
        except Exception as e:
            _rec.update({"phase": "non_stream_read_error", "message": str(e)})
            _RECENT.append(_rec)
            return _error(500, str(e) or type(e).__name__)
        finally:
            await upstream.aclose()
        _rec["phase"] = "non_stream_ok"
        _RECENT.append(_rec)
        return Response(
            content=raw,
            status_code=upstream.status_code,
            media_type="application/json",
            headers=NO_CACHE_HEADERS,
        )

    sink = QueueSink()
    session = StreamSession(
        upstream.aiter_bytes(),
        sink,
        on_finish=upstream.aclose,
        label=uuid.uuid4().hex[:8],
    )
    _rec["session"] = session.label
    _SESSIONS.add(session)
    task = session.start()

    def _done(_task) -> None:
        _SESSIONS.discard(session)
        _rec["phase"] = f"stream_{session.outcome.value if session.outcome else 'unknown'}"
        _rec["frames"] = session.frames_written
        _RECENT.append(_rec)

    task.add_done_callback(_done)

    async def event_stream() -> AsyncIterator[bytes]:
        try:
            async for chunk in sink.drain():
                yield chunk
        finally:
            # No-op when the session already finished; otherwise the client left
            session.abort()
            sink.detach()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=NO_CACHE_HEADERS)


@app.get("/v1/models")
async def list_models(
    authorization: str | None = Header(default=None, alias="authorization"),
    cache: ModelListCache = Depends(get_models_cache),
):
    if not _has_bearer(authorization):
        return _unauthorized()

    async def load() -> str:
        client = _get_httpx_client()
        resp = await fetch_with_retry(
            client,
            "GET",
            settings.models_url,
            headers={"Authorization": authorization},
            timeout=httpx.Timeout(settings.upstream_timeout),
        )
        if settings.debug:
            print("[proxy] model list refreshed from upstream", file=sys.stderr)
        return resp.text

    try:
        text = await cache.get(load)
    except UpstreamError as e:
        print(f"[proxy] model list fetch failed: {e.message}", file=sys.stderr)
        return _error(500, e.message, lastError=e.to_dict()["lastError"])
    except Exception as e:
        print(f"[proxy] model list fetch failed: {type(e).__name__}: {e}", file=sys.stderr)
        return _error(500, str(e) or type(e).__name__)
    return Response(content=text, media_type="application/json", headers=NO_CACHE_HEADERS)


@app.get("/")
async def root():
    return {"ok": True, "backend": settings.qwen_base_url}


@app.get("/_debug/last")
async def debug_last():
    return _RECENT[-1] if _RECENT else {}


# Admin: view the model list cache entry
@app.get("/_models_cache")
async def get_models_cache_entry(cache: ModelListCache = Depends(get_models_cache)):
    return cache.snapshot()


# Admin: drop the cached model list so the next request refetches it
@app.delete("/_models_cache")
async def clear_models_cache(cache: ModelListCache = Depends(get_models_cache)):
    return {"ok": True, "removed": cache.clear()}


@app.on_event("startup")
async def _startup_noop():
    # Initialize shared HTTP client eagerly to establish pools
    _ = _get_httpx_client()
    return None


@app.on_event("shutdown")
async def _shutdown_close_client():
    global _HTTPX_CLIENT
    for session in list(_SESSIONS):
        session.abort()
    if _HTTPX_CLIENT is not None:
        try:
            await _HTTPX_CLIENT.aclose()
        except Exception:
            ...
        _HTTPX_CLIENT = None
