"""
Compact traceability codes for watermarks.

Format: 8 base-36 chars of epoch milliseconds + instance id + 2 base-36 chars
of a per-process sequence (wrapped at 36**2). Sortable and short enough to
burn into a video; not a secret.
"""
import itertools
import threading
import time
from typing import Callable

from ..core.config import settings

ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
TIME_WIDTH = 8
SEQUENCE_WIDTH = 2
SEQUENCE_MODULO = 36 ** SEQUENCE_WIDTH


def to_base36(value: int, width: int) -> str:
    if value < 0:
        raise ValueError("value must be non-negative")
    digits = []
    while value > 0:
        value, remainder = divmod(value, 36)
        digits.append(ALPHABET[remainder])
    return "".join(reversed(digits)).rjust(width, "0")


class CodeGenerator:
    def __init__(self, instance_id: str = None, clock: Callable[[], float] = time.time):
        self.instance_id = (instance_id or settings.WATERMARK_INSTANCE_ID).upper()
        self._clock = clock
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def next_sequence(self) -> int:
        with self._lock:
            return next(self._sequence) % SEQUENCE_MODULO

    def generate(self) -> str:
        millis = int(self._clock() * 1000)
        return (
            to_base36(millis, TIME_WIDTH)
            + self.instance_id
            + to_base36(self.next_sequence(), SEQUENCE_WIDTH)
        ).upper()
