"""
In-memory request stats for a wallet connection.

Tracks request outcomes, response freshness, per-method counts and recent
requests.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .tracker import Freshness


@dataclass
class RequestRecord:
    """One finished request."""
    request_id: str
    method: Optional[str]
    outcome: str  # "ok", "wallet_error", "timeout", "failed"
    freshness: Optional[str]
    timestamp: float  # seconds since epoch


class WalletStats:
    """In-memory request statistics for one NwcWallet."""

    def __init__(self, max_recent: int = 100):
        self.max_recent = max_recent
        self._lock = threading.Lock()

        # Totals
        self.total_sent: int = 0
        self.total_resolved: int = 0
        self.total_failed: int = 0
        self.total_timeouts: int = 0
        self.total_wallet_errors: int = 0
        self.unmatched_responses: int = 0

        # Freshness of matched responses
        self._freshness: Dict[str, int] = {f.value: 0 for f in Freshness}

        # Per-method: method → { sent, ok, errors }
        self._methods: Dict[str, Dict[str, int]] = {}

        # Recent finished requests (ring buffer)
        self._recent: List[RequestRecord] = []

    def _method_entry(self, method: Optional[str]) -> Dict[str, int]:
        key = method or "unknown"
        if key not in self._methods:
            self._methods[key] = {"sent": 0, "ok": 0, "errors": 0}
        return self._methods[key]

    def _remember(self, record: RequestRecord) -> None:
        self._recent.append(record)
        if len(self._recent) > self.max_recent:
            self._recent = self._recent[-self.max_recent:]

    def record_sent(self, method: Optional[str]) -> None:
        with self._lock:
            self.total_sent += 1
            self._method_entry(method)["sent"] += 1

    def record_response(
        self,
        request_id: str,
        method: Optional[str],
        freshness: Freshness,
        wallet_error: bool = False,
    ) -> None:
        """
        Record a response matched to a pending request.

        Args:
            request_id: The request event id.
            method: NWC method of the request.
            freshness: How the response timestamp relates to the request.
            wallet_error: Whether the wallet answered with an NWC error.
        """
        with self._lock:
            self.total_resolved += 1
            self._freshness[freshness.value] += 1
            entry = self._method_entry(method)
            if wallet_error:
                self.total_wallet_errors += 1
                entry["errors"] += 1
            else:
                entry["ok"] += 1
            self._remember(
                RequestRecord(
                    request_id=request_id,
                    method=method,
                    outcome="wallet_error" if wallet_error else "ok",
                    freshness=freshness.value,
                    timestamp=time.time(),
                )
            )

    def record_failure(self, request_id: str, method: Optional[str], timeout: bool = False) -> None:
        """Record a request that ended without a response."""
        with self._lock:
            if timeout:
                self.total_timeouts += 1
            else:
                self.total_failed += 1
            self._method_entry(method)["errors"] += 1
            self._remember(
                RequestRecord(
                    request_id=request_id,
                    method=method,
                    outcome="timeout" if timeout else "failed",
                    freshness=None,
                    timestamp=time.time(),
                )
            )

    def record_unmatched(self) -> None:
        with self._lock:
            self.unmatched_responses += 1

    def freshness_count(self, freshness: Freshness) -> int:
        with self._lock:
            return self._freshness[freshness.value]

    def to_dict(self) -> Dict[str, Any]:
        """
        Get stats summary as a plain dict.

        Recent requests are listed newest first, at most 20.
        """
        with self._lock:
            recent = [
                {
                    "requestId": r.request_id,
                    "method": r.method,
                    "outcome": r.outcome,
                    "freshness": r.freshness,
                    "timestamp": r.timestamp,
                }
                for r in self._recent[-20:]
            ]
            recent.reverse()

            return {
                "totalSent": self.total_sent,
                "totalResolved": self.total_resolved,
                "totalFailed": self.total_failed,
                "totalTimeouts": self.total_timeouts,
                "totalWalletErrors": self.total_wallet_errors,
                "unmatchedResponses": self.unmatched_responses,
                "freshness": dict(self._freshness),
                "methods": {name: dict(data) for name, data in self._methods.items()},
                "recentRequests": recent,
            }
