"""Abort a loop that keeps failing the same way.

Two independent counters, whichever trips first:

- consecutive failing iterations (reset by a passing iteration)
- occurrences of each normalized error signature (never reset, so an error
  that comes back after an unrelated success still accumulates)

Once tripped the breaker stays tripped for the rest of the run.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_TIMESTAMP_RE = re.compile(
    r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?",
    re.IGNORECASE,
)
_PATH_RE = re.compile(r"(?:[A-Za-z]:)?(?:[\w.@-]*[/\\])+[\w.@-]+")
_HEX_RE = re.compile(r"\b0x[0-9a-f]+\b|\b[0-9a-f]{7,}\b")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_SPACE_RE = re.compile(r"\s+")

SIGNATURE_MAX_CHARS = 200


def normalize_error(text: str) -> str:
    """Reduce an error message to a signature stable across iterations.

    Paths, line numbers, addresses, hashes and timestamps change between
    otherwise identical failures, so they are replaced with placeholders.
    """
    sig = _ANSI_RE.sub("", text or "")
    sig = sig.lower()
    sig = _TIMESTAMP_RE.sub("<time>", sig)
    sig = _PATH_RE.sub("<path>", sig)
    sig = _HEX_RE.sub("<hex>", sig)
    sig = _NUMBER_RE.sub("<n>", sig)
    sig = _SPACE_RE.sub(" ", sig).strip()
    return sig[:SIGNATURE_MAX_CHARS]


@dataclass
class CircuitBreakerStats:
    consecutive_failures: int
    total_failures: int
    total_successes: int
    error_signatures: Dict[str, int]
    is_open: bool
    trip_reason: Optional[str]


class CircuitBreaker:
    """Failure accounting for one loop run.

    Args:
        max_consecutive_failures: Trip after this many failing iterations in a row
        max_same_error_count: Trip when one signature has been seen this often
    """

    def __init__(self, max_consecutive_failures: int = 3, max_same_error_count: int = 5):
        if max_consecutive_failures < 1 or max_same_error_count < 1:
            raise ValueError("circuit breaker thresholds must be >= 1")
        self.max_consecutive_failures = max_consecutive_failures
        self.max_same_error_count = max_same_error_count
        self.consecutive_failures = 0
        self.total_failures = 0
        self.total_successes = 0
        self.error_signatures: Dict[str, int] = {}
        self._trip_reason: Optional[str] = None

    @property
    def is_tripped(self) -> bool:
        return self._trip_reason is not None

    @property
    def trip_reason(self) -> Optional[str]:
        return self._trip_reason

    def record_success(self) -> None:
        """A validated iteration. Clears the consecutive counter only."""
        self.total_successes += 1
        self.consecutive_failures = 0

    def record_failure(self, errors: Iterable[str]) -> bool:
        """Record one failing iteration and every error it produced.

        Each distinct signature is counted once per call, so an iteration
        that prints the same error twice does not double count.

        Returns:
            True if the breaker is (now) tripped
        """
        self.total_failures += 1
        self.consecutive_failures += 1

        seen: List[str] = []
        for err in errors:
            sig = normalize_error(err)
            if sig and sig not in seen:
                seen.append(sig)
        if not seen:
            seen.append("<unknown failure>")

        for sig in seen:
            self.error_signatures[sig] = self.error_signatures.get(sig, 0) + 1

        if self._trip_reason is None:
            self._trip_reason = self._check_thresholds(seen)
            if self._trip_reason:
                logger.warning("Circuit breaker tripped: %s", self._trip_reason)
        return self.is_tripped

    def _check_thresholds(self, recent: List[str]) -> Optional[str]:
        if self.consecutive_failures >= self.max_consecutive_failures:
            return f"{self.consecutive_failures} consecutive failures"
        for sig in recent:
            count = self.error_signatures[sig]
            if count >= self.max_same_error_count:
                return f"same error seen {count} times: {sig[:80]}"
        return None

    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            consecutive_failures=self.consecutive_failures,
            total_failures=self.total_failures,
            total_successes=self.total_successes,
            error_signatures=dict(self.error_signatures),
            is_open=self.is_tripped,
            trip_reason=self._trip_reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consecutiveFailures": self.consecutive_failures,
            "totalFailures": self.total_failures,
            "totalSuccesses": self.total_successes,
            "errorSignatures": dict(self.error_signatures),
            "tripReason": self._trip_reason,
        }

    @classmethod
    def from_dict(
        cls,
        data: Optional[Dict[str, Any]],
        max_consecutive_failures: int = 3,
        max_same_error_count: int = 5,
    ) -> "CircuitBreaker":
        """Restore counters from a session checkpoint."""
        breaker = cls(max_consecutive_failures, max_same_error_count)
        if not data:
            return breaker
        breaker.consecutive_failures = int(data.get("consecutiveFailures", 0) or 0)
        breaker.total_failures = int(data.get("totalFailures", 0) or 0)
        breaker.total_successes = int(data.get("totalSuccesses", 0) or 0)
        sigs = data.get("errorSignatures") or {}
        if isinstance(sigs, dict):
            breaker.error_signatures = {str(k): int(v) for k, v in sigs.items()}
        reason = data.get("tripReason")
        breaker._trip_reason = str(reason) if reason else None
        return breaker
