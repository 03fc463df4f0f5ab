"""Shared data type definitions (ChunkDescriptor, ReceivedRange, ScheduleOutcome, etc.)."""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


@dataclass(frozen=True)
class ChunkDescriptor:
    """
    One contiguous byte range of a file.

    Offsets are inclusive on both ends, matching the wire format of the
    relay server (``info.start`` / ``info.end`` and ``Content-Range``).
    """
    start: int
    end: int
    total: int
    index: int

    def __post_init__(self):
        if not 0 <= self.start <= self.end < self.total:
            raise ValueError(
                f"Invalid chunk range {self.start}-{self.end} for total {self.total}"
            )

    @property
    def size(self) -> int:
        return self.end - self.start + 1


def plan_chunks(total_size: int, chunk_size: int) -> List[ChunkDescriptor]:
    """
    Partition ``[0, total_size)`` into ``ceil(total_size / chunk_size)`` descriptors.

    Args:
        total_size: File size in bytes
        chunk_size: Maximum bytes per chunk

    Returns:
        Descriptors in offset order; empty for a zero-byte file
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    if total_size < 0:
        raise ValueError("total_size must not be negative")

    descriptors = []
    for index, start in enumerate(range(0, total_size, chunk_size)):
        end = min(start + chunk_size, total_size) - 1
        descriptors.append(ChunkDescriptor(start=start, end=end, total=total_size, index=index))
    return descriptors


@dataclass
class ReceivedRange:
    """Bytes received for one offset, waiting for finalization."""
    start: int
    data: bytes

    @property
    def end(self) -> int:
        return self.start + len(self.data)


@dataclass(frozen=True)
class ScheduleOutcome:
    """Aggregate result of a scheduler run."""
    total: int
    completed: int
    failed: int

    @property
    def succeeded(self) -> bool:
        return self.failed == 0 and self.completed == self.total


class TransferStatus(str, Enum):
    SUCCESS = "success"
    FALLBACK = "fallback"
    ERROR = "error"


class Role(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


@dataclass
class TransferProgress:
    """Byte progress of the active transport."""
    loaded: int = 0
    total: int = 0

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100 if self.loaded == 0 else 0
        # half rounds up: 1 of 8 is 13%
        return (self.loaded * 200 + self.total) // (self.total * 2)

    def reset(self, total: Optional[int] = None) -> None:
        self.loaded = 0
        if total is not None:
            self.total = total
