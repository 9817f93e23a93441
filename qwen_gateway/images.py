from __future__ import annotations

import asyncio
import base64
import binascii
import sys
from typing import Any, Dict, List, Tuple

import httpx

from .config import settings
from .retry import fetch_with_retry


class ImageUploadError(RuntimeError):
    ...


def is_inline_image(part: Any) -> bool:
    if not isinstance(part, dict) or part.get("type") != "image_url":
        return False
    image_url = part.get("image_url")
    url = image_url.get("url") if isinstance(image_url, dict) else None
    return isinstance(url, str) and url.startswith("data:")


def decode_data_uri(uri: str) -> Tuple[bytes, str]:
    """Split ``data:<mime>;base64,<payload>`` into raw bytes and mime type."""
    header, sep, data = uri.partition(",")
    if not sep or not header.startswith("data:"):
        raise ImageUploadError("Malformed data URI")
    mime = header[len("data:"):].split(";", 1)[0].strip() or "application/octet-stream"
    try:
        raw = base64.b64decode(data.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageUploadError(f"Invalid base64 image data: {e}") from e
    return raw, mime


async def upload_image(client: httpx.AsyncClient, authorization: str, raw: bytes, mime: str) -> str:
    """Upload image bytes to the upstream file store and return the file id."""
    ext = mime.split("/", 1)[-1] if "/" in mime else "bin"
    if settings.debug:
        print(f"[proxy] uploading image: {len(raw)} bytes, {mime}", file=sys.stderr)
    response = await fetch_with_retry(
        client,
        "POST",
        settings.files_url,
        headers={"Authorization": authorization, "accept": "application/json"},
        files={"file": (f"image.{ext}", raw, mime)},
        timeout=httpx.Timeout(settings.upstream_timeout),
    )
    try:
        data = response.json()
    except ValueError:
        raise ImageUploadError("File upload failed: upstream did not return JSON")
    image_id = data.get("id") if isinstance(data, dict) else None
    if not image_id:
        raise ImageUploadError("File upload failed: no file id returned")
    if settings.debug:
        print(f"[proxy] image uploaded, id={image_id}", file=sys.stderr)
    return str(image_id)


async def convert_messages(
    messages: List[Any], client: httpx.AsyncClient, authorization: str
) -> List[Any]:
    """Replace inline base64 ``image_url`` parts with uploaded ``image`` references."""

    async def convert_part(part: Any) -> Any:
        if not is_inline_image(part):
            return part
        raw, mime = decode_data_uri(part["image_url"]["url"])
        image_id = await upload_image(client, authorization, raw, mime)
        return {"type": "image", "image": image_id}

    out: List[Any] = []
    for message in messages:
        if isinstance(message, dict) and isinstance(message.get("content"), list):
            parts = await asyncio.gather(*(convert_part(p) for p in message["content"]))
            message = {**message, "content": list(parts)}
        out.append(message)
    return out


def has_inline_images(messages: List[Any]) -> bool:
    for message in messages:
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list) and any(is_inline_image(p) for p in content):
            return True
    return False

