"""
UUIDv7 identifiers for patients and audit records.

The first 48 bits are the Unix time in milliseconds, so ids sort by creation
time. Within one millisecond the 12-bit ``rand_a`` field is used as a
counter (RFC 9562, method 1), keeping ids issued by this process strictly
increasing even when several audit records land in the same millisecond.
"""

import os
import threading
import time
import uuid

_lock = threading.Lock()
_last_ms = 0
_counter = 0

COUNTER_MAX = 0xFFF


def _next_timestamp_and_counter():
    global _last_ms, _counter
    with _lock:
        now_ms = int(time.time() * 1000)
        if now_ms > _last_ms:
            _last_ms = now_ms
            _counter = int.from_bytes(os.urandom(2), "big") & 0x7FF
        elif _counter < COUNTER_MAX:
            _counter += 1
        else:
            # Counter exhausted: borrow the next millisecond
            _last_ms += 1
            _counter = 0
        return _last_ms, _counter


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string.

    Layout: 48-bit ms timestamp | version 7 | 12-bit counter | variant 10 |
    62 random bits.
    """
    timestamp_ms, counter = _next_timestamp_and_counter()
    tail = int.from_bytes(os.urandom(8), "big") & ((1 << 62) - 1)

    value = (timestamp_ms & 0xFFFFFFFFFFFF) << 80
    value |= 0x7 << 76
    value |= counter << 64
    value |= 0b10 << 62
    value |= tail

    return str(uuid.UUID(int=value))
