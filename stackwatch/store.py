"""Accumulated resource state for the watched stack."""

from __future__ import annotations

import threading
from collections.abc import Iterable

from stackwatch.fetcher import StackResource


class ResourceStatuses:
    """Last known state of every resource seen so far, keyed by identifier.

    Keys are only ever added or overwritten: a resource missing from a
    later fetch keeps its previous entry. All access goes through a lock;
    readers get immutable snapshots.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: dict[str, StackResource] = {}

    def merge(self, resources: Iterable[StackResource]) -> None:
        with self._lock:
            for resource in resources:
                self._resources[resource.identifier] = resource

    def snapshot(self) -> tuple[StackResource, ...]:
        """Point-in-time copy, sorted by identifier."""
        with self._lock:
            return tuple(
                self._resources[k] for k in sorted(self._resources)
            )

    def statuses(self) -> dict[str, str]:
        with self._lock:
            return {k: r.status for k, r in self._resources.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def __contains__(self, identifier: object) -> bool:
        with self._lock:
            return identifier in self._resources
