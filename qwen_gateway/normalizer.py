from __future__ import annotations

from typing import Any, Dict, Optional


def incremental_suffix(previous: str, current: str) -> str:
    """Text in ``current`` that was not already sent as ``previous``.

    Upstream deltas are cumulative and normally extend the previous one. When
    they do not (a shrink or a rewrite) the whole current content is new.
    """
    if current.startswith(previous):
        return current[len(previous):]
    return current


def delta_content(payload: Any) -> Optional[str]:
    """``choices[0].delta.content`` when it is a non-empty string, else None."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def with_delta_content(payload: Dict[str, Any], content: str) -> Dict[str, Any]:
    """Copy of ``payload`` with ``choices[0].delta.content`` replaced."""
    choices = payload["choices"]
    first = dict(choices[0])
    first["delta"] = {**first["delta"], "content": content}
    return {**payload, "choices": [first, *choices[1:]]}


class DeltaNormalizer:
    """Per-stream memory of the last cumulative content seen."""

    def __init__(self) -> None:
        self.previous = ""

    def feed(self, current: str) -> str:
        increment = incremental_suffix(self.previous, current)
        # Track the full cumulative value, not the increment
        self.previous = current
        return increment
