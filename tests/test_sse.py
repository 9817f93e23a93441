import json

from qwen_gateway.sse import DONE_FRAME, FrameBuffer, error_frame, is_data_line, sse_data, sse_raw


STREAM = (
    'data: {"choices":[{"delta":{"content":"你好"}}]}\n'
    "\n"
    ": keep-alive\n"
    "event: message\n"
    'data: {"choices":[{"delta":{"content":"你好，世界"}}]}\n'
    "\n"
    "data: [DONE]\n"
).encode("utf-8")


def _collect(chunks):
    buf = FrameBuffer()
    lines = []
    for chunk in chunks:
        lines.extend(buf.feed(chunk))
    tail = buf.flush()
    if tail is not None:
        lines.append(tail)
    return lines


def test_feed_returns_complete_data_lines_and_keeps_partial():
    buf = FrameBuffer()
    lines = buf.feed(b'data: {"a":1}\ndata: {"b":2}\ndata: {"c"')
    assert lines == ['data: {"a":1}', 'data: {"b":2}']
    assert buf.pending == 'data: {"c"'
    assert buf.feed(b":3}\n") == ['data: {"c":3}']
    assert buf.pending == ""


def test_non_data_lines_are_dropped():
    assert _collect([STREAM]) == [
        'data: {"choices":[{"delta":{"content":"你好"}}]}',
        'data: {"choices":[{"delta":{"content":"你好，世界"}}]}',
        "data: [DONE]",
    ]


def test_every_chunking_yields_the_same_lines():
    expected = _collect([STREAM])
    for cut in range(1, len(STREAM)):
        assert _collect([STREAM[:cut], STREAM[cut:]]) == expected
    one_byte_chunks = [STREAM[i:i + 1] for i in range(len(STREAM))]
    assert _collect(one_byte_chunks) == expected


def test_separate_buffers_do_not_share_state():
    chunk = b'data: {"x":1}\ndata: {"y"'
    assert FrameBuffer().feed(chunk) == FrameBuffer().feed(chunk) == ['data: {"x":1}']


def test_flush_recovers_unterminated_last_line():
    buf = FrameBuffer()
    assert buf.feed(b'data: {"x":1}\ndata: {"y":2}') == ['data: {"x":1}']
    assert buf.flush() == 'data: {"y":2}'
    assert buf.flush() is None


def test_flush_ignores_non_data_tail():
    buf = FrameBuffer()
    buf.feed(b"data: {}\n: ping")
    assert buf.flush() is None


def test_crlf_and_indented_lines_are_trimmed():
    assert _collect([b'data: {"x":1}\r\n\r\n  data: {"y":2}\r\n']) == ['data: {"x":1}', 'data: {"y":2}']


def test_is_data_line():
    assert is_data_line("data: {}")
    assert is_data_line("  data: [DONE]  ")
    assert not is_data_line("data:{}")
    assert not is_data_line(": comment")
    assert not is_data_line("")


def test_frame_helpers():
    assert sse_data({"a": "é"}) == 'data: {"a": "é"}\n\n'.encode()
    assert sse_raw("data: {broken") == b"data: {broken\n\n"
    assert DONE_FRAME == b"data: [DONE]\n\n"
    frame = error_frame('bad "quote"')
    assert frame.startswith(b"data: ") and frame.endswith(b"\n\n")
    assert json.loads(frame[len(b"data: "):]) == {"error": True, "message": 'bad "quote"'}
