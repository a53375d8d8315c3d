# src/pricat_pipeline/locks.py

import threading
import zlib


class KeyedLocks:
    """
    A fixed pool of locks striped by key.

    Work on the same key is serialized; work on different keys proceeds in
    parallel unless two keys happen to share a stripe.
    """

    def __init__(self, stripes: int = 64):
        if stripes <= 0:
            raise ValueError("stripes must be positive")
        self._locks = [threading.Lock() for _ in range(stripes)]

    def lock_for(self, key: str) -> threading.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]
