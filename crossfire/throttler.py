"""
Token-bucket rate limiting at global, per-host and per-protocol scope.
"""
import threading
import time
from typing import Dict, List, Optional, Tuple

from .config import RateLimits


class TokenBucket:
    """Refills at `rate` tokens per second up to `burst`. Not thread-safe on its own."""

    def __init__(self, rate: float, burst: int = 1, clock=time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = float(max(1, burst))
        self.tokens = self.capacity
        self.clock = clock
        self.updated = clock()

    def refill(self):
        now = self.clock()
        self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
        self.updated = now

    def wait_time(self) -> float:
        """Seconds until one token is available (0 when one already is)."""
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.rate

    def take(self):
        self.tokens -= 1.0


class RateLimiter:
    """
    Debits every applicable bucket for one request, or none of them.

    Logic:
    1. Collect the global, host and protocol buckets that are configured
    2. Refill them and find the longest wait among them
    3. If nobody has to wait, debit all buckets at once
    4. Otherwise report the longest wait; the caller decides when to retry
    """

    def __init__(self, limits: Optional[RateLimits] = None, clock=time.monotonic):
        self.limits = limits or RateLimits()
        self.clock = clock
        self._buckets: Dict[Tuple[str, str], TokenBucket] = {}
        self._lock = threading.Lock()

    def _bucket(self, scope: str, key: str, rate: float) -> TokenBucket:
        bucket = self._buckets.get((scope, key))
        if bucket is None:
            bucket = TokenBucket(rate, self.limits.burst, clock=self.clock)
            self._buckets[(scope, key)] = bucket
        return bucket

    def _applicable(self, host: str, protocol: str) -> List[TokenBucket]:
        buckets = []
        if self.limits.global_rate:
            buckets.append(self._bucket("global", "*", self.limits.global_rate))
        if self.limits.per_host_rate:
            buckets.append(self._bucket("host", host, self.limits.per_host_rate))
        rate = self.limits.per_protocol_rate.get(protocol)
        if rate:
            buckets.append(self._bucket("protocol", protocol, rate))
        return buckets

    def try_acquire(self, host: str, protocol: str) -> float:
        """Debits all buckets and returns 0, or returns how long to wait without debiting."""
        with self._lock:
            buckets = self._applicable(host, protocol)
            for bucket in buckets:
                bucket.refill()
            wait = max((b.wait_time() for b in buckets), default=0.0)
            if wait <= 0:
                for bucket in buckets:
                    bucket.take()
            return wait
