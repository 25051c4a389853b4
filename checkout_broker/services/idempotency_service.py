"""Idempotency key derivation.

A purchase intent is identified by (subject, product, time bucket). The
bucket is the request time integer-divided by the window length, so
repeated requests inside one window collapse onto the same key while a
purchase repeated after the window rolls over gets a fresh key.
"""

import hashlib
import time

DEFAULT_WINDOW_MS = 60000


def now_ms():
    return int(time.time() * 1000)


def bucket_for(timestamp_ms, window_ms=DEFAULT_WINDOW_MS):
    if window_ms <= 0:
        raise ValueError("window_ms must be positive")
    return timestamp_ms // window_ms


def derive_key(subject_id, product_id, timestamp_ms, window_ms=DEFAULT_WINDOW_MS):
    """Return the sha256 hex idempotency key for this purchase intent."""
    bucket = bucket_for(timestamp_ms, window_ms)
    raw = f"{subject_id}:{product_id}:{bucket}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def seconds_left_in_bucket(timestamp_ms, window_ms=DEFAULT_WINDOW_MS):
    """Seconds until the current bucket rolls over (at least 1)."""
    remaining_ms = window_ms - (timestamp_ms % window_ms)
    return max(1, -(-remaining_ms // 1000))
