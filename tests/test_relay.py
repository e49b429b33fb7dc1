import json

from build_runner.build.relay import (
    DONE_FRAME,
    ChunkDecoder,
    format_frame,
    format_tail_frame,
)


def test_objects_pass_through() -> None:
    decoder = ChunkDecoder()
    message = {"type": "result", "result": "ok"}
    assert decoder.decode(message) is message
    assert decoder.decode(None) is None
    assert decoder.decode(42) is None


def test_json_text_and_bytes_are_parsed() -> None:
    decoder = ChunkDecoder()
    assert decoder.decode('{"type": "error", "error": "x"}') == {"type": "error", "error": "x"}
    assert decoder.decode(b'{"type": "result"}') == {"type": "result"}
    assert decoder.decode(bytearray(b'{"a": 1}')) == {"a": 1}
    assert decoder.decode(memoryview(b'{"b": 2}')) == {"b": 2}


def test_invalid_json_becomes_raw() -> None:
    decoder = ChunkDecoder()
    assert decoder.decode("plain progress text") == {"raw": "plain progress text"}
    assert decoder.decode("[1, 2]") == {"raw": "[1, 2]"}
    assert decoder.decode("") is None


def test_split_multibyte_character_is_reassembled() -> None:
    decoder = ChunkDecoder()
    encoded = "é".encode("utf-8")
    assert decoder.decode(encoded[:1]) is None
    assert decoder.decode(encoded[1:]) == {"raw": "é"}
    assert decoder.flush() == ""


def test_flush_returns_buffered_partial_sequence() -> None:
    decoder = ChunkDecoder()
    assert decoder.decode("€".encode("utf-8")[:2]) is None
    assert decoder.flush() == "�"
    assert decoder.flush() == ""


def test_frame_formatting() -> None:
    frame = format_frame({"type": "text-delta", "delta": "héllo"})
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "text-delta", "delta": "héllo"}
    assert "héllo" in frame
    assert DONE_FRAME == "data: [DONE]\n\n"
    assert format_tail_frame("leftover") == "data: leftover\n\n"
    assert format_tail_frame("data: x\n\n") == "data: x\n\n"
