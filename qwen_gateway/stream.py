from __future__ import annotations

import asyncio
import enum
import json
import sys
import uuid
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Optional

from .config import settings
from .normalizer import DeltaNormalizer, delta_content, with_delta_content
from .sse import DATA_PREFIX, DONE_FRAME, FrameBuffer, error_frame, sse_data, sse_raw

TIMEOUT_MESSAGE = "Response timeout"


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CLOSED = "closed"


class SinkClosedError(RuntimeError):
    ...


class TimerHandle:
    def __init__(self) -> None:
        self.task: Optional[asyncio.Task] = None
        self.fired = False
        self.cancelled = False

    @property
    def pending(self) -> bool:
        return not (self.fired or self.cancelled)


class LifecycleTimer:
    """Single-shot deadline; ``on_expire`` runs in the timer's own task."""

    def arm(self, seconds: float, on_expire: Callable[[], Awaitable[Any]]) -> TimerHandle:
        handle = TimerHandle()

        async def _wait_and_fire() -> None:
            await asyncio.sleep(seconds)
            # From here on disarm() must not cancel the expiry work
            handle.fired = True
            try:
                await on_expire()
            except Exception as e:
                print(f"[stream] timer callback failed: {type(e).__name__}: {e}", file=sys.stderr)

        handle.task = asyncio.ensure_future(_wait_and_fire())
        return handle

    def disarm(self, handle: Optional[TimerHandle]) -> None:
        if handle is None or not handle.pending:
            return
        handle.cancelled = True
        if handle.task is not None:
            handle.task.cancel()


class QueueSink:
    """Client-facing byte sink; ``drain()`` feeds a StreamingResponse.

    At most ``maxsize`` frames are buffered; ``write`` waits for the reader
    beyond that. ``detach()`` is for the reader going away: it discards what
    is buffered, which also wakes a writer waiting for room.
    """

    _EOF = object()

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise SinkClosedError("write after close")
        await self._queue.put(data)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(self._EOF)
        except asyncio.QueueFull:
            # drain() stops on its own once the backlog is consumed
            pass

    def detach(self) -> None:
        self.closed = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return

    async def drain(self) -> AsyncIterator[bytes]:
        while True:
            if self.closed and self._queue.empty():
                return
            item = await self._queue.get()
            if item is self._EOF:
                return
            yield item


class StreamSession:
    """Relays one upstream SSE body to a sink with cumulative deltas made incremental.

    The session ends in exactly one of COMPLETED (upstream finished), FAILED
    (read/write error, or the client went away) or TIMED_OUT (the lifecycle
    timer fired first). Whichever path claims the transition first writes the
    terminal frames and closes the sink; the others do nothing. The claim is a
    plain check-and-set with no ``await`` in between, which is atomic on the
    event loop.

    ``sink`` needs ``async write(bytes)`` and ``close()``. ``on_finish`` is
    awaited once the upstream is no longer read, to release the response.
    """

    def __init__(
        self,
        chunks: AsyncIterable[bytes],
        sink: Any,
        *,
        timeout: Optional[float] = None,
        on_finish: Optional[Callable[[], Awaitable[Any]]] = None,
        timer: Optional[LifecycleTimer] = None,
        label: Optional[str] = None,
    ) -> None:
        self._chunks = chunks
        self._sink = sink
        self.timeout = settings.stream_timeout if timeout is None else timeout
        self._on_finish = on_finish
        self._timer = timer or LifecycleTimer()
        self._timer_handle: Optional[TimerHandle] = None
        self._buffer = FrameBuffer()
        self._normalizer = DeltaNormalizer()
        self.state = SessionState.ACTIVE
        self.outcome: Optional[SessionState] = None
        self.frames_written = 0
        self.label = label or uuid.uuid4().hex[:8]
        self._pump_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    def start(self) -> asyncio.Task:
        if self._run_task is None:
            self._run_task = asyncio.ensure_future(self.run())
        return self._run_task

    async def run(self) -> Optional[SessionState]:
        if self.state is SessionState.ACTIVE and self._pump_task is None:
            self._timer_handle = self._timer.arm(self.timeout, self._expire)
            self._pump_task = asyncio.ensure_future(self._pump())
        try:
            await self._closed.wait()
            if self._pump_task is not None:
                await asyncio.gather(self._pump_task, return_exceptions=True)
        finally:
            if self.state is SessionState.ACTIVE:
                self.abort()
            # A pump cancelled before its first step never reaches its own finally
            await self._release()
        return self.outcome

    def abort(self) -> None:
        """Stop reading and close the sink without writing; the reader is gone."""
        if not self._claim(SessionState.FAILED):
            return
        if settings.debug:
            print(f"[stream][{self.label}] aborted by client", file=sys.stderr)
        if self._pump_task is not None:
            self._pump_task.cancel()
        self._close_sink()

    def _claim(self, outcome: SessionState) -> bool:
        if self.state is not SessionState.ACTIVE:
            return False
        self.state = outcome
        self.outcome = outcome
        self._timer.disarm(self._timer_handle)
        return True

    async def _expire(self) -> None:
        if not self._claim(SessionState.TIMED_OUT):
            return
        print(f"[stream][{self.label}] no completion after {self.timeout:g}s, closing", file=sys.stderr)
        if self._pump_task is not None:
            self._pump_task.cancel()
        await self._finish(TIMEOUT_MESSAGE)

    async def _pump(self) -> None:
        try:
            async for chunk in self._chunks:
                for line in self._buffer.feed(chunk):
                    await self._process_line(line)
            tail = self._buffer.flush()
            if tail is not None:
                await self._process_line(tail)
        except Exception as e:
            if self._claim(SessionState.FAILED):
                print(f"[stream][{self.label}] stream exception: {type(e).__name__}: {e}", file=sys.stderr)
                await self._finish(str(e) or type(e).__name__)
        else:
            if self._claim(SessionState.COMPLETED):
                if settings.debug:
                    print(f"[stream][{self.label}] upstream finished after {self.frames_written} frames", file=sys.stderr)
                await self._finish(None)
        finally:
            await self._release()

    async def _process_line(self, line: str) -> None:
        try:
            payload = json.loads(line[len(DATA_PREFIX):])
        except ValueError:
            # Never drop a line; only transform what is transformable
            await self._write(sse_raw(line))
            return
        content = delta_content(payload)
        if content is None:
            await self._write(sse_data(payload))
            return
        increment = self._normalizer.feed(content)
        if increment:
            await self._write(sse_data(with_delta_content(payload, increment)))

    async def _write(self, data: bytes) -> None:
        if self.state is not SessionState.ACTIVE:
            return
        await self._sink.write(data)
        self.frames_written += 1
        if settings.debug:
            print(f"[sse][{self.label}]", data.decode("utf-8", errors="replace").rstrip(), file=sys.stderr)

    async def _finish(self, error_message: Optional[str]) -> None:
        try:
            if error_message is not None:
                await self._sink.write(error_frame(error_message))
            await self._sink.write(DONE_FRAME)
        except Exception as e:
            print(f"[stream][{self.label}] could not write terminal frames: {type(e).__name__}: {e}", file=sys.stderr)
        finally:
            self._close_sink()

    def _close_sink(self) -> None:
        try:
            self._sink.close()
        except Exception as e:
            print(f"[stream][{self.label}] error closing sink: {type(e).__name__}: {e}", file=sys.stderr)
        self.state = SessionState.CLOSED
        self._closed.set()

    async def _release(self) -> None:
        on_finish, self._on_finish = self._on_finish, None
        if on_finish is None:
            return
        try:
            await on_finish()
        except Exception as e:
            print(f"[stream][{self.label}] error releasing upstream: {type(e).__name__}: {e}", file=sys.stderr)
