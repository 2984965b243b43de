"""In-memory call/registration counters."""

from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclasses.dataclass
class Statistics:
    registration_attempts: int = 0
    registration_successes: int = 0
    registration_failures: int = 0
    call_successes: int = 0
    call_failures: int = 0
    rtp_packets_sent: int = 0
    rtp_packets_received: int = 0
    last_registration: datetime | None = None
    last_successful_call: datetime | None = None

    def record_registration(self, ok: bool) -> None:
        if ok:
            self.registration_successes += 1
            self.last_registration = utcnow()
        else:
            self.registration_failures += 1

    def record_call(self, ok: bool) -> None:
        if ok:
            self.call_successes += 1
            self.last_successful_call = utcnow()
        else:
            self.call_failures += 1

    def add_rtp(self, sent: int, received: int) -> None:
        self.rtp_packets_sent += sent
        self.rtp_packets_received += received

    def snapshot(self, live_sent: int = 0, live_received: int = 0) -> dict[str, Any]:
        """JSON-ready copy, folding in counters of a session still running."""
        data = dataclasses.asdict(self)
        data["rtp_packets_sent"] += live_sent
        data["rtp_packets_received"] += live_received
        for key in ("last_registration", "last_successful_call"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data
