"""Receiver-side assembly of byte ranges into the final artifact."""

from pathlib import Path
from typing import Dict, Optional

from common.exceptions import IncompleteTransferError, SizeMismatchError
from common.logging_config import get_logger
from common.types import ReceivedRange

logger = get_logger(__name__)


class Reassembler:
    """
    Collects ranges keyed by start offset and joins them once.

    Arrival order never matters: ranges are placed by explicit offset and
    contiguity is checked at finalization.
    """

    def __init__(self, file_name: str = "", total_size: int = 0):
        self.file_name = file_name
        self.total_size = total_size
        self._ranges: Dict[int, ReceivedRange] = {}
        self._received_bytes = 0
        self._consumed = False

    @property
    def received_bytes(self) -> int:
        return self._received_bytes

    @property
    def range_count(self) -> int:
        return len(self._ranges)

    def add(self, start: int, data: bytes) -> int:
        """
        Store one range.

        Args:
            start: Offset of the first byte
            data: Range payload

        Returns:
            Total bytes received so far

        Raises:
            IncompleteTransferError: If a range with the same start is already stored
        """
        if self._consumed:
            raise RuntimeError("Reassembler already finalized")
        if start < 0:
            raise ValueError("start offset must not be negative")
        if start in self._ranges:
            raise IncompleteTransferError(self.file_name, start + len(self._ranges[start].data), start)
        self._ranges[start] = ReceivedRange(start=start, data=bytes(data))
        self._received_bytes += len(data)
        return self._received_bytes

    def finalize(self) -> bytes:
        """
        Sort ranges by offset, verify each starts where the previous ended and
        copy them into a buffer of the declared total size.

        Returns:
            The assembled file contents, exactly total_size bytes long

        Raises:
            IncompleteTransferError: On a gap or overlap between ranges
            SizeMismatchError: If the ranges run past total_size
        """
        if self._consumed:
            raise RuntimeError("Reassembler already finalized")

        expected = 0
        ordered = []
        for start in sorted(self._ranges):
            received = self._ranges[start]
            if received.start != expected:
                raise IncompleteTransferError(self.file_name, expected, received.start)
            ordered.append(received)
            expected = received.end

        if expected > self.total_size:
            raise SizeMismatchError(self.file_name, self.total_size, expected)
        if expected < self.total_size:
            logger.warning(
                f"Ranges for {self.file_name} end at {expected} of {self.total_size} bytes"
            )

        buffer = bytearray(self.total_size)
        for received in ordered:
            buffer[received.start:received.end] = received.data

        self._consumed = True
        self._ranges.clear()
        logger.debug(f"Assembled {self.file_name}: {self.total_size} bytes from {len(ordered)} ranges")
        return bytes(buffer)

    def save(self, output_dir: Path, name: Optional[str] = None) -> Path:
        """
        Finalize and write the artifact into ``output_dir``.

        An existing file is never overwritten; a numeric suffix is added.

        Returns:
            Path of the written file
        """
        content = self.finalize()
        return write_artifact(output_dir, name or self.file_name, content)


def write_artifact(output_dir: Path, name: str, content: bytes) -> Path:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    safe_name = Path(name or "downloaded_file").name or "downloaded_file"
    target = output_dir / safe_name
    counter = 1
    while target.exists():
        target = output_dir / f"{Path(safe_name).stem} ({counter}){Path(safe_name).suffix}"
        counter += 1
    target.write_bytes(content)
    logger.info(f"Saved {len(content)} bytes to {target}")
    return target
