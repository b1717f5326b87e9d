"""
Request throttling for credential issuance and disclosure.

Disclosure is limited twice: per calling client, and per presented
credential, so a single leaked or guessed envelope cannot be hammered from
many addresses. Credentials are keyed by digest; raw tokens are never held.
"""

import threading
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

from .config import Settings
from .errors import RateLimitError
from .logging_config import audit_log
from .util import now_epoch, sha256_hex


class SlidingWindow:
    """Per-key hit counter over a trailing window."""

    def __init__(self, limit: int, window_seconds: int = 60, clock: Callable[[], float] = now_epoch):
        self.limit = max(1, limit)
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str) -> Optional[float]:
        """Record a hit for key. Returns None if allowed, else seconds until the oldest hit expires."""
        now = self._clock()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                return max(0.0, hits[0] + self.window_seconds - now)
            hits.append(now)
            return None

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


def credential_key(serialized: str) -> str:
    return "credential:" + sha256_hex(serialized or "")[:32]


class RequestLimits:
    """The limits one CustodyService enforces, sized from its Settings."""

    def __init__(self, issue_rpm: int, disclose_rpm: int, credential_rpm: int, clock: Callable[[], float] = now_epoch):
        self.issue = SlidingWindow(issue_rpm, clock=clock)
        self.disclose = SlidingWindow(disclose_rpm, clock=clock)
        self.credential = SlidingWindow(credential_rpm, clock=clock)

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], float] = now_epoch) -> "RequestLimits":
        return cls(settings.issue_rpm, settings.disclose_rpm, settings.credential_rpm, clock=clock)

    @staticmethod
    def _enforce(window: SlidingWindow, key: str, client_id: str, endpoint: str) -> None:
        retry_after = window.hit(key)
        if retry_after is not None:
            audit_log.rate_limit_exceeded(client_id, endpoint)
            raise RateLimitError(endpoint, retry_after)

    def check_issue(self, client_id: str) -> None:
        self._enforce(self.issue, client_id, client_id, "issue")

    def check_disclose(self, client_id: str, serialized: str) -> None:
        """
        Count one disclosure attempt against both the client and the credential.

        Raises:
            RateLimitError: Either budget is exhausted
        """
        self._enforce(self.disclose, client_id, client_id, "disclose")
        self._enforce(self.credential, credential_key(serialized), client_id, "disclose_credential")

    def clear(self) -> None:
        for window in (self.issue, self.disclose, self.credential):
            window.clear()
