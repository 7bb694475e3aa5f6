"""Paced, fixed-size writes for payloads typed into a terminal.

Terminal line disciplines cap the length of a single input line (commonly
256 bytes) and may drop bytes arriving in a burst, so long payloads are split
into small pieces written with a short delay in between.
"""

from __future__ import annotations

import time
from typing import Callable, List, Optional

DEFAULT_PIECE_SIZE_BITS = 32 * 8
DEFAULT_INTER_PIECE_DELAY_MS = 10

WriteFn = Callable[[bytes], Optional[bool]]
PauseFn = Callable[[float], bool]


def _sleep(seconds: float) -> bool:
    time.sleep(seconds)
    return False


def validate_piece_size(piece_size_bits: int) -> int:
    """Return *piece_size_bits* or raise ``ValueError`` when unusable."""

    if isinstance(piece_size_bits, bool) or not isinstance(piece_size_bits, int):
        raise ValueError(f"piece size must be an integer (got {piece_size_bits!r})")
    if piece_size_bits <= 0 or piece_size_bits % 8:
        raise ValueError(
            f"piece size must be a positive multiple of 8 bits (got {piece_size_bits})"
        )
    return piece_size_bits


def split_pieces(payload: bytes, piece_size_bits: int = DEFAULT_PIECE_SIZE_BITS) -> List[bytes]:
    """Split *payload* into consecutive pieces of ``piece_size_bits`` bits.

    The last piece holds the remainder and is never padded. An empty payload
    yields no pieces.
    """

    size = validate_piece_size(piece_size_bits) // 8
    return [payload[offset : offset + size] for offset in range(0, len(payload), size)]


def write_chunked(
    write: WriteFn,
    payload: bytes,
    piece_size_bits: int = DEFAULT_PIECE_SIZE_BITS,
    inter_piece_delay_ms: int = DEFAULT_INTER_PIECE_DELAY_MS,
    *,
    pause: Optional[PauseFn] = None,
) -> int:
    """Write *payload* piece by piece and return the number of pieces sent.

    ``write`` may return ``False`` to report that a piece had no effect (for
    example because the terminal is gone); ``pause`` returns ``True`` when
    the wait was interrupted. Either stops the remaining pieces.
    """

    if inter_piece_delay_ms < 0:
        raise ValueError(f"inter-piece delay must be >= 0 (got {inter_piece_delay_ms})")
    pieces = split_pieces(payload, piece_size_bits)
    pause_fn = _sleep if pause is None else pause
    delay = inter_piece_delay_ms / 1000.0

    written = 0
    for index, piece in enumerate(pieces):
        if index and pause_fn(delay):
            break
        if write(piece) is False:
            break
        written += 1
    return written
