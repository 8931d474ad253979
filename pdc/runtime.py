from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock

from .models import utc_now


@dataclass
class RouteEntry:
    service: str
    weight: int
    sequence: int
    updated_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory routing table for the in-process traffic router."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.routes: dict[str, RouteEntry] = {}  # service -> canary weight
        self.rr_index: dict[str, int] = {}  # key -> idx

    def set_weight(self, service: str, weight: int, sequence: int = 0) -> bool:
        """Apply a weight unless a newer sequence number was already applied.

        Returns True if the table changed.
        """
        with self.lock:
            cur = self.routes.get(service)
            if cur is not None and sequence and sequence < cur.sequence:
                return False
            self.routes[service] = RouteEntry(service=service, weight=weight, sequence=sequence)
            return True

    def get_weight(self, service: str) -> int:
        with self.lock:
            cur = self.routes.get(service)
            return cur.weight if cur else 0

    def get_route(self, service: str) -> RouteEntry | None:
        with self.lock:
            return self.routes.get(service)

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i

    def peek_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            return self.rr_index.get(key, 0) % n
