"""Tail-line buffering for unframed console output."""

from __future__ import annotations


class LineAccumulator:
    """Keep the unterminated tail of a console byte stream.

    Only the segment after the most recent newline matters for prompt
    detection, so everything before it is discarded as soon as it arrives.
    The buffer is kept as bytes and decoded on every append, which lets a
    multi-byte character split across two chunks decode correctly once its
    second half arrives.
    """

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def buffer(self) -> bytes:
        return self._buffer

    @property
    def line(self) -> str:
        """Return the current tail decoded as UTF-8."""

        return self._buffer.decode("utf-8", errors="replace")

    def append(self, chunk: bytes) -> str:
        """Add *chunk* to the buffer and return the observed tail line."""

        if not chunk:
            return self.line
        buffer = self._buffer + chunk
        newline = buffer.rfind(b"\n")
        if newline != -1:
            buffer = buffer[newline + 1 :]
        self._buffer = buffer
        return self.line
