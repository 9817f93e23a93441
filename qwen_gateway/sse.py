from __future__ import annotations

import codecs
import json
from typing import Any, Dict, List, Optional

DATA_PREFIX = "data: "
DONE_FRAME = b"data: [DONE]\n\n"


def is_data_line(line: str) -> bool:
    return line.strip().startswith(DATA_PREFIX)


def sse_data(payload: Dict[str, Any]) -> bytes:
    try:
        return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n".encode()
    except UnicodeEncodeError:
        # Lone surrogates (a split emoji) only survive as \u escapes
        return f"{DATA_PREFIX}{json.dumps(payload)}\n\n".encode()


def sse_raw(line: str) -> bytes:
    """Frame an already-prefixed line as-is."""
    return f"{line}\n\n".encode()


def error_frame(message: str) -> bytes:
    return sse_data({"error": True, "message": message})


class FrameBuffer:
    """Reassembles ``data:`` lines from arbitrarily chunked SSE bytes.

    Transport chunks do not line up with lines, or even with UTF-8 code
    points, so bytes go through an incremental decoder and text is held
    until a newline arrives. Everything except ``data:`` lines (comments,
    keep-alives, ``event:`` fields, blank separators) is dropped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes) -> List[str]:
        self._pending += self._decoder.decode(chunk)
        parts = self._pending.split("\n")
        self._pending = parts.pop()
        return [p.strip() for p in parts if is_data_line(p)]

    def flush(self) -> Optional[str]:
        """Return the unterminated last line, if it is a data line."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        if is_data_line(tail):
            return tail.strip()
        return None
