"""
Time-sortable identifiers (ULID layout).

26 characters of Crockford base32: 48 bits of Unix time in milliseconds followed by
80 random bits. Ids generated within the same millisecond by one process are kept
strictly increasing by incrementing the random part.
"""
import os
import threading
import time

_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_RANDOM_BITS = 80
_RANDOM_MAX = (1 << _RANDOM_BITS) - 1

_lock = threading.Lock()
_last_ms = -1
_last_random = 0


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(_CROCKFORD[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def new_id(now_ms: int | None = None) -> str:
    """Generate a new ULID-formatted identifier"""
    global _last_ms, _last_random

    timestamp = int(time.time() * 1000) if now_ms is None else now_ms
    with _lock:
        if timestamp <= _last_ms:
            # Same (or skewed-back) millisecond: stay monotonic.
            timestamp = _last_ms
            random_part = _last_random + 1
            if random_part > _RANDOM_MAX:
                timestamp += 1
                random_part = int.from_bytes(os.urandom(10), "big")
        else:
            random_part = int.from_bytes(os.urandom(10), "big")
        _last_ms = timestamp
        _last_random = random_part

    return _encode(timestamp, 10) + _encode(random_part, 16)


def id_timestamp_ms(value: str) -> int:
    """Milliseconds since the epoch encoded in an identifier"""
    result = 0
    for char in value[:10].upper():
        result = (result << 5) | _CROCKFORD.index(char)
    return result
