"""Admission control: sliding-window rate limiting and scan detection.

All state here is owned by explicit service objects constructed once per
gateway. Every read-modify-write on a map entry happens without an ``await``
in between, which is what keeps the counts consistent under asyncio without
locks. Running these objects from several threads requires a lock per map.
State is per process: a multi-replica deployment needs a shared store for
consistent limiting.
"""

from __future__ import annotations

import logging
import math
import time
from collections import OrderedDict, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from relaygate.gateway.audit import SecurityAuditLogger
from relaygate.gateway.errors import Forbidden, RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """``max_requests`` per trailing ``window`` seconds."""

    max_requests: int
    window: float = 60.0


DEFAULT_RATE_LIMITS: dict[str, RateLimitPolicy] = {
    "chat": RateLimitPolicy(60, 60.0),
    "embeddings": RateLimitPolicy(100, 60.0),
    "default": RateLimitPolicy(120, 60.0),
}


class RateLimiter:
    """Sliding-window limiter keyed by (identity, endpoint class).

    Only timestamps with ``now - t < window`` count. A denied request is not
    recorded, so denial never pushes the remaining quota below zero.
    """

    def __init__(
        self,
        policies: Mapping[str, RateLimitPolicy] | None = None,
        max_identities: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policies = dict(policies or DEFAULT_RATE_LIMITS)
        if "default" not in self.policies:
            self.policies["default"] = DEFAULT_RATE_LIMITS["default"]
        self.max_identities = max_identities
        self._clock = clock
        # Ordered by last activity so the least active identity is trimmed first
        self._windows: OrderedDict[tuple[str, str], deque[float]] = OrderedDict()

    def policy_for(self, endpoint_class: str) -> RateLimitPolicy:
        return self.policies.get(endpoint_class, self.policies["default"])

    def _prune(self, key: tuple[str, str], policy: RateLimitPolicy, now: float) -> deque[float]:
        window = self._windows.get(key)
        if window is None:
            window = deque()
            self._windows[key] = window
        while window and now - window[0] >= policy.window:
            window.popleft()
        return window

    def is_allowed(self, identity: str, endpoint_class: str) -> bool:
        """Record the request and return True, or return False if over the limit."""
        return self.check(identity, endpoint_class) is None

    def check(self, identity: str, endpoint_class: str) -> int | None:
        """Like ``is_allowed`` but returns the retry-after hint in seconds when denied."""
        policy = self.policy_for(endpoint_class)
        key = (identity, endpoint_class)
        now = self._clock()
        window = self._prune(key, policy, now)
        self._windows.move_to_end(key)

        if len(window) >= policy.max_requests:
            return max(1, math.ceil(window[0] + policy.window - now))

        window.append(now)
        self._trim()
        return None

    def remaining(self, identity: str, endpoint_class: str) -> int:
        policy = self.policy_for(endpoint_class)
        key = (identity, endpoint_class)
        if key not in self._windows:
            return policy.max_requests
        window = self._prune(key, policy, self._clock())
        return max(0, policy.max_requests - len(window))

    def _trim(self) -> None:
        while len(self._windows) > self.max_identities:
            self._windows.popitem(last=False)


# Substrings that only show up when scanning for files, panels and exploits
SENSITIVE_FRAGMENTS = (
    # credential and config files
    ".env",
    ".git",
    ".svn",
    ".htaccess",
    ".htpasswd",
    "web.config",
    "config.json",
    "secrets.json",
    "credentials",
    "wp-config",
    ".pem",
    ".key",
    ".p12",
    ".pfx",
    ".keystore",
    ".sql",
    ".sqlite",
    ".db",
    ".bak",
    ".ds_store",
    # admin panels
    "wp-admin",
    "wp-login",
    "phpmyadmin",
    "admin/",
    "administrator/",
    "server-status",
    # script endpoints
    ".php",
    ".jsp",
    ".aspx",
    "cgi-bin",
    # system files
    "etc/passwd",
    "etc/shadow",
    "proc/self",
    # traversal
    "../",
    "..\\",
    "%2e%2e",
)

SHELL_INJECTION_TOKENS = (";", "&&", "||", "`", "$(", "${")


class PathDetector:
    """Case-insensitive heuristic for paths that only a scanner would request.

    ``exempt_paths`` are exact routes (compared without the query string)
    whose own path is never flagged; their query string is still screened.
    """

    def __init__(
        self,
        fragments: tuple[str, ...] = SENSITIVE_FRAGMENTS,
        exempt_paths: frozenset[str] = frozenset(),
        cache_size: int = 1000,
    ):
        self.fragments = tuple(f.lower() for f in fragments)
        self.exempt_paths = exempt_paths
        self.cache_size = cache_size
        self._cache: OrderedDict[str, bool] = OrderedDict()

    def is_sensitive(self, path: str) -> bool:
        route, sep, query = path.partition("?")
        if route in self.exempt_paths:
            if not query:
                return False
            path = sep + query

        cached = self._cache.get(path)
        if cached is not None:
            return cached

        lowered = path.lower()
        result = any(fragment in lowered for fragment in self.fragments) or any(
            token in lowered for token in SHELL_INJECTION_TOKENS
        )

        self._cache[path] = result
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return result


@dataclass
class ScanRecord:
    """Recent sensitive-path hits for one identity, bounded to ``maxlen``."""

    hits: deque[tuple[float, str]]
    last_seen: float = 0.0

    def distinct_paths(self, now: float, window: float) -> set[str]:
        return {path for ts, path in self.hits if now - ts <= window}

    @property
    def timestamps(self) -> list[float]:
        return [ts for ts, _ in self.hits]


@dataclass
class ScanDetector:
    """Blocks identities that request several sensitive paths in a short window.

    Example:
        >>> detector = ScanDetector(scan_threshold=2)
        >>> detector.record("198.51.100.7", "/.env")
        >>> detector.record("198.51.100.7", "/wp-login.php")
        >>> detector.is_attack("198.51.100.7")
        True
    """

    history_limit: int = 10
    scan_threshold: int = 3
    scan_window: float = 30.0
    block_duration: float = 3600.0
    max_identities: int = 1000
    clock: Callable[[], float] = time.monotonic
    _records: dict[str, ScanRecord] = field(default_factory=dict)
    _blocked: dict[str, float] = field(default_factory=dict)

    def record(self, identity: str, path: str) -> None:
        now = self.clock()
        self._expire_blocks(now)

        record = self._records.get(identity)
        if record is None:
            record = ScanRecord(hits=deque(maxlen=self.history_limit))
            self._records[identity] = record
        record.hits.append((now, path))
        record.last_seen = now

        self._limit_history()

    def is_blocked(self, identity: str) -> bool:
        blocked_at = self._blocked.get(identity)
        if blocked_at is None:
            return False
        if self.clock() - blocked_at >= self.block_duration:
            del self._blocked[identity]
            logger.info("Block expired for %s", identity)
            return False
        return True

    def is_attack(self, identity: str) -> bool:
        """True if blocked already, or newly blocked by this check."""
        if self.is_blocked(identity):
            return True

        record = self._records.get(identity)
        if record is None:
            return False

        now = self.clock()
        if len(record.distinct_paths(now, self.scan_window)) >= self.scan_threshold:
            self._blocked[identity] = now
            logger.warning(
                "Blocking %s for %.0fs after scan pattern", identity, self.block_duration
            )
            return True
        return False

    def blocked_identities(self) -> list[str]:
        self._expire_blocks(self.clock())
        return list(self._blocked)

    def _expire_blocks(self, now: float) -> None:
        expired = [ip for ip, ts in self._blocked.items() if now - ts >= self.block_duration]
        for ip in expired:
            del self._blocked[ip]

    def _limit_history(self) -> None:
        while len(self._records) > self.max_identities:
            oldest = min(self._records, key=lambda ip: self._records[ip].last_seen)
            del self._records[oldest]


@dataclass
class AdmissionController:
    """Runs the pre-forwarding checks for one request.

    ``screen`` handles abuse (blocked identities and sensitive paths) and
    ``admit`` applies the per-endpoint-class rate limit. Both raise the
    rejection that becomes the final response.
    """

    rate_limiter: RateLimiter
    scan_detector: ScanDetector
    path_detector: PathDetector
    audit: SecurityAuditLogger

    def screen(self, identity: str, path: str) -> None:
        if self.scan_detector.is_blocked(identity):
            self.audit.log(
                "block", "Blocked request from banned client", {"ip": identity, "path": path}
            )
            raise Forbidden("Forbidden")

        if self.path_detector.is_sensitive(path):
            self.scan_detector.record(identity, path)
            self.audit.log(
                "warn", "Rejected sensitive path request", {"ip": identity, "path": path}
            )
            if self.scan_detector.is_attack(identity):
                self.audit.log(
                    "alert", "Detected scanning attack pattern", {"ip": identity, "path": path}
                )
            raise Forbidden("Forbidden")

    def admit(self, identity: str, endpoint_class: str) -> None:
        retry_after = self.rate_limiter.check(identity, endpoint_class)
        if retry_after is not None:
            logger.warning(
                "Rate limit exceeded: client=%s class=%s retry_after=%ds",
                identity,
                endpoint_class,
                retry_after,
            )
            raise RateLimited(f"Rate limit exceeded for {endpoint_class}", retry_after=retry_after)
