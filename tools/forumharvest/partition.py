"""Static, coordination-free assignment of threads to workers."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import PartitionMisconfiguration


def owner_of(thread_id: int, worker_count: int) -> int:
    """Index of the worker that owns ``thread_id`` among ``worker_count`` workers."""
    return thread_id % worker_count


def owns(thread_id: int, worker_index: int, worker_count: int) -> bool:
    return owner_of(thread_id, worker_count) == worker_index


@dataclass(frozen=True)
class Partition:
    """This worker's slice of the thread space.

    Ownership is recomputed on every call, so changing ``count`` between runs
    needs no migration: threads simply land on their new owner.
    """
    index: int = 0
    count: int = 1

    def __post_init__(self) -> None:
        if self.count < 1:
            raise PartitionMisconfiguration(f"worker count must be >= 1, got {self.count}")
        if not 0 <= self.index < self.count:
            raise PartitionMisconfiguration(
                f"worker index {self.index} is outside [0, {self.count})"
            )

    def owns(self, thread_id: int) -> bool:
        return owns(thread_id, self.index, self.count)

    def __str__(self) -> str:
        return f"worker {self.index}/{self.count}"
