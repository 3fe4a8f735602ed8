# parksense_gateway/core/line_framer.py
from typing import List
import logging

from .errors import FramingOverflow

logger = logging.getLogger(__name__)

NEWLINE = b"\n"


class LineFramer:
    """
    Splits a raw byte stream into newline-terminated text lines.

    Chunks may carry no newline, several newlines, or half a line; whatever
    is not yet terminated stays buffered for the next feed(). Lines are
    stripped of surrounding whitespace, so both \\r\\n and \\n endings work.
    Blank lines are dropped.

    A line longer than max_line_length is discarded in full, including any
    part of it that arrives after the overflow was detected, so chunk
    boundaries never change what comes out.
    """

    def __init__(self, max_line_length: int = 1024, encoding: str = "ascii"):
        self.max_line_length = max_line_length
        self.encoding = encoding
        self.buffer = bytearray()
        self.overflow_count = 0
        self._discarding = False

    def feed(self, chunk: bytes) -> List[str]:
        """Append a chunk and return every line it completed"""
        lines: List[str] = []
        if not chunk:
            return lines

        self.buffer.extend(chunk)

        while True:
            idx = self.buffer.find(NEWLINE)
            if idx == -1:
                break

            raw = bytes(self.buffer[:idx])
            del self.buffer[:idx + 1]

            if self._discarding:
                # Tail of an oversized line
                self._discarding = False
                continue

            if len(raw) > self.max_line_length:
                self._overflow(len(raw))
                continue

            line = raw.decode(self.encoding, errors="replace").strip()
            if line:
                lines.append(line)

        if len(self.buffer) > self.max_line_length:
            if not self._discarding:
                self._overflow(len(self.buffer))
            self.buffer.clear()
            self._discarding = True

        return lines

    def reset(self):
        """Drop any partial line (e.g. after the link tore)"""
        if self.buffer:
            logger.debug(f"Discarding {len(self.buffer)} buffered bytes")
        self.buffer.clear()
        self._discarding = False

    def pending(self) -> int:
        """Number of buffered, unterminated bytes"""
        return len(self.buffer)

    def _overflow(self, size: int):
        self.overflow_count += 1
        error = FramingOverflow(size, self.max_line_length)
        logger.warning(f"{error}; dropping line")
