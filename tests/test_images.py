import base64
import json

import httpx
import pytest

from qwen_gateway.config import settings
from qwen_gateway.images import (
    ImageUploadError,
    convert_messages,
    decode_data_uri,
    has_inline_images,
)

PNG = b"\x89PNG\r\n\x1a\nfake-image"
DATA_URI = "data:image/png;base64," + base64.b64encode(PNG).decode()


def _files_client(uploads, response_json=None):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url == httpx.URL(settings.files_url)
        assert request.headers["authorization"] == "Bearer tok"
        uploads.append(request.content)
        return httpx.Response(200, json=response_json if response_json is not None else {"id": f"file-{len(uploads)}"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_decode_data_uri():
    raw, mime = decode_data_uri(DATA_URI)
    assert raw == PNG
    assert mime == "image/png"


@pytest.mark.parametrize("uri", ["data:image/png;base64", "http://x/y.png,abc", "data:image/png;base64,@@@"])
def test_decode_data_uri_rejects_malformed(uri):
    with pytest.raises(ImageUploadError):
        decode_data_uri(uri)


def test_has_inline_images():
    assert has_inline_images([{"role": "user", "content": [{"type": "image_url", "image_url": {"url": DATA_URI}}]}])
    assert not has_inline_images([{"role": "user", "content": [{"type": "image_url", "image_url": {"url": "https://x/a.png"}}]}])
    assert not has_inline_images([{"role": "user", "content": "hello"}])


@pytest.mark.asyncio
async def test_convert_messages_uploads_inline_images(monkeypatch):
    monkeypatch.setattr(settings, "retry_delay", 0.0)
    uploads = []
    messages = [
        {"role": "system", "content": "be brief"},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "what is this?"},
                {"type": "image_url", "image_url": {"url": DATA_URI}},
                {"type": "image_url", "image_url": {"url": "https://example.com/cat.png"}},
            ],
        },
    ]
    original = json.loads(json.dumps(messages))
    async with _files_client(uploads) as client:
        out = await convert_messages(messages, client, "Bearer tok")

    assert len(uploads) == 1
    assert b'name="file"' in uploads[0]
    assert PNG in uploads[0]
    assert out[0] == messages[0]
    assert out[1]["content"][0] == {"type": "text", "text": "what is this?"}
    assert out[1]["content"][1] == {"type": "image", "image": "file-1"}
    assert out[1]["content"][2]["type"] == "image_url"
    assert messages == original


@pytest.mark.asyncio
async def test_upload_without_id_fails(monkeypatch):
    monkeypatch.setattr(settings, "retry_delay", 0.0)
    messages = [{"role": "user", "content": [{"type": "image_url", "image_url": {"url": DATA_URI}}]}]
    async with _files_client([], response_json={"ok": True}) as client:
        with pytest.raises(ImageUploadError):
            await convert_messages(messages, client, "Bearer tok")
