"""Content fingerprints used as scan-cache keys.

The fingerprint only has to be deterministic and cheap enough to run before
any network call.  It is not a security primitive: collisions are unlikely
for full-payload hashing and quite possible for sampled hashing, so it must
never be used to authenticate content.
"""

from __future__ import annotations

import hashlib

KEY_PREFIX = "scan:"
_DIGEST_SIZE = 16


def fingerprint(
    payload: bytes | bytearray | memoryview,
    *,
    sample_windows: int = 0,
    window_bytes: int = 64,
) -> str:
    """Compute the cache key for an image payload.

    Args:
        payload: Raw image bytes.
        sample_windows: ``0`` hashes every byte.  A positive value hashes the
            payload length plus that many windows of ``window_bytes`` taken at
            evenly spaced offsets.  Payloads too short to sample are hashed
            in full.
        window_bytes: Size of each sampled window.

    Returns:
        ``"scan:"`` followed by a 32-character hex BLAKE2b digest.

    Raises:
        TypeError: If *payload* is not a bytes-like object.
    """
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise TypeError(f"fingerprint() expects bytes, got {type(payload).__name__}")

    data = bytes(payload)
    h = hashlib.blake2b(digest_size=_DIGEST_SIZE)
    length = len(data)

    if sample_windows <= 0 or length <= sample_windows * window_bytes:
        h.update(data)
    else:
        # The length is mixed in so payloads that only differ in size never
        # share a key.
        h.update(length.to_bytes(8, "big"))
        for i in range(sample_windows):
            start = (i * length) // sample_windows
            h.update(b"|")
            h.update(data[start : start + window_bytes])

    return f"{KEY_PREFIX}{h.hexdigest()}"
