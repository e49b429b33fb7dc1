from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Dict, Optional

from ..logging_utils import log_event

_logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"


class ChunkDecoder:
    """Turn whatever the agent stream yields into one parsed message.

    Objects pass through untouched. Text and binary chunks (``bytes``,
    ``bytearray``, ``memoryview``) go through one incremental UTF-8 decoder,
    so a multi-byte character split across chunks is reassembled. Anything
    that is not valid JSON comes back as ``{"raw": text}``.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._logger = logger or _logger

    def _to_text(self, chunk: Any) -> Optional[str]:
        if isinstance(chunk, str):
            return chunk
        if isinstance(chunk, (bytes, bytearray, memoryview)):
            return self._decoder.decode(bytes(chunk))
        return None

    def decode(self, chunk: Any) -> Optional[Dict[str, Any]]:
        if chunk is None:
            return None
        if isinstance(chunk, dict):
            return chunk
        text = self._to_text(chunk)
        if text is None:
            log_event(
                self._logger,
                logging.WARNING,
                "build.unsupported_chunk",
                chunk_type=type(chunk).__name__,
            )
            return None
        if text == "":
            return None
        try:
            parsed = json.loads(text)
        except ValueError:
            return {"raw": text}
        if isinstance(parsed, dict):
            return parsed
        return {"raw": text}

    def flush(self) -> str:
        """Return whatever the decoder still buffers; the decoder is then reset."""
        tail = self._decoder.decode(b"", final=True)
        self._decoder.reset()
        return tail


def format_frame(frame: Any) -> str:
    return f"data: {json.dumps(frame, ensure_ascii=False, default=str)}\n\n"


def format_tail_frame(text: str) -> str:
    payload = text if text.startswith("data:") else f"data: {text}"
    if not payload.endswith("\n\n"):
        payload = f"{payload}\n\n"
    return payload


__all__ = ["ChunkDecoder", "DONE_FRAME", "format_frame", "format_tail_frame"]
