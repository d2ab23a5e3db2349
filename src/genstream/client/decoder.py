"""Incremental NDJSON frame decoder for the client side of a generation stream.

Network chunks arrive on arbitrary byte boundaries; a frame may be split across
chunks or several frames may share one. The decoder carries the unterminated
tail over to the next ``feed`` call and only parses complete lines.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger("genstream.client")

DEFAULT_STALL_TIMEOUT = 120.0
_SSE_PREFIX = b"data:"


class FrameDecoder:
    def __init__(
        self,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stall_timeout = stall_timeout
        self._clock = clock
        self._buffer = b""
        self.last_frame_at: float = clock()
        self.skipped = 0

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        """Consume a chunk and return the complete non-heartbeat frames it finished."""

        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        frames: List[Dict[str, Any]] = []
        for line in lines:
            frame = self._parse(line)
            if frame is None:
                continue
            self.last_frame_at = self._clock()
            if frame.get("type") == "heartbeat":
                continue
            frames.append(frame)
        return frames

    def flush(self) -> List[Dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""

        tail, self._buffer = self._buffer, b""
        frame = self._parse(tail)
        if frame is None or frame.get("type") == "heartbeat":
            return []
        self.last_frame_at = self._clock()
        return [frame]

    @property
    def pending(self) -> bytes:
        return self._buffer

    def stalled(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return now - self.last_frame_at > self.stall_timeout

    def _parse(self, line: bytes) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None
        if line.startswith(_SSE_PREFIX):
            line = line[len(_SSE_PREFIX):].strip()
        try:
            frame = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            self.skipped += 1
            logger.warning("malformed_frame_skipped preview=%r", line[:80])
            return None
        if not isinstance(frame, dict) or "type" not in frame:
            self.skipped += 1
            logger.warning("untyped_frame_skipped preview=%r", line[:80])
            return None
        return frame
