"""Server-relayed chunked transfer over HTTP (the fallback path)."""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from common.constants import (
    DOWNLOAD_CONCURRENCY,
    HTTP_CHUNK_SIZE_BYTES,
    UPLOAD_CONCURRENCY,
)
from common.exceptions import ProtocolError, SizeMismatchError
from common.logging_config import get_logger
from common.types import ChunkDescriptor, TransferProgress, plan_chunks
from transfer.api import FileFlowApi
from transfer.reassembler import Reassembler
from transfer.resilient import CHUNK_POLICY, DownloadedRange, RetryPolicy, download_chunk, upload_chunk
from transfer.scheduler import BoundedScheduler

logger = get_logger(__name__)


ProgressCallback = Callable[[TransferProgress], None]


class TransferFile:
    """Readable file handed to a transport: a path on disk or bytes in memory."""

    def __init__(self, name: str, size: int, path: Optional[Path] = None, content: Optional[bytes] = None):
        if path is None and content is None:
            raise ValueError("TransferFile needs a path or content")
        self.name = name
        self.size = size
        self.path = path
        self.content = content

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> 'TransferFile':
        path = Path(path)
        return cls(name=path.name, size=path.stat().st_size, path=path)

    @classmethod
    def from_bytes(cls, name: str, content: bytes) -> 'TransferFile':
        return cls(name=name, size=len(content), content=bytes(content))

    def read(self, start: int, length: int) -> bytes:
        """Read ``length`` bytes at ``start`` (shorter at end of file)."""
        if self.content is not None:
            return self.content[start:start + length]
        with open(self.path, 'rb') as f:
            f.seek(start)
            return f.read(length)

    def read_range(self, descriptor: ChunkDescriptor) -> bytes:
        return self.read(descriptor.start, descriptor.size)


@dataclass
class ChunkStats:
    """Per-run counters reported after a transport finishes."""
    chunks: int = 0
    retries: int = 0


class ChunkTransport:
    """
    Uploads or downloads a file as fixed-size ranges through the relay server.

    Each range is one work unit for the BoundedScheduler; each unit goes
    through the resilient request layer.
    """

    def __init__(
        self,
        api: FileFlowApi,
        chunk_size: int = HTTP_CHUNK_SIZE_BYTES,
        upload_concurrency: int = UPLOAD_CONCURRENCY,
        download_concurrency: int = DOWNLOAD_CONCURRENCY,
        policy: RetryPolicy = CHUNK_POLICY,
    ):
        self.api = api
        self.chunk_size = chunk_size
        self.upload_concurrency = upload_concurrency
        self.download_concurrency = download_concurrency
        self.policy = policy
        self.stats = ChunkStats()

    def _count_retry(self, attempt: int, error: BaseException) -> None:
        self.stats.retries += 1

    async def upload(
        self,
        access_code: str,
        file: TransferFile,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TransferProgress:
        """
        Upload every range of ``file``.

        Returns:
            Final progress (loaded == total on success)

        Raises:
            AggregateTransferError: If any chunk failed after its retries
        """
        descriptors = plan_chunks(file.size, self.chunk_size)
        progress = TransferProgress(loaded=0, total=file.size)
        url = self.api.upload_url(access_code)
        self.stats = ChunkStats(chunks=len(descriptors))

        logger.info(
            f"Uploading {file.name} ({file.size} bytes) as {len(descriptors)} chunks "
            f"[concurrency={self.upload_concurrency}]"
        )

        def make_unit(descriptor: ChunkDescriptor):
            async def unit() -> int:
                data = file.read_range(descriptor)
                return await upload_chunk(
                    self.api.client,
                    url,
                    descriptor,
                    file.name,
                    data,
                    self.policy,
                    self._count_retry,
                )
            return unit

        def on_result(index: int, sent: Optional[int], error: Optional[BaseException]) -> None:
            if error is not None:
                logger.error(f"Chunk {index + 1}/{len(descriptors)} of {file.name} failed: {error}")
                return
            progress.loaded += sent
            if on_progress is not None:
                on_progress(progress)

        scheduler = BoundedScheduler(self.upload_concurrency)
        await scheduler.run([make_unit(d) for d in descriptors], on_result)

        if file.size == 0 and on_progress is not None:
            on_progress(progress)
        logger.info(f"Upload of {file.name} complete ({self.stats.retries} retries)")
        return progress

    async def download(
        self,
        access_code: str,
        rid: str,
        total_size: int,
        file_name: str = "",
        on_progress: Optional[ProgressCallback] = None,
        on_name: Optional[Callable[[str], None]] = None,
    ) -> Reassembler:
        """
        Download every window of a file the sender uploaded.

        Args:
            access_code: Transfer access code
            rid: Receiver id the server binds the transfer to
            total_size: Declared file size (from the status endpoint)
            file_name: Display name known so far
            on_progress: Progress callback
            on_name: Called with the Content-Name reported by the server

        Returns:
            Reassembler holding every received range, ready to finalize

        Raises:
            AggregateTransferError: If any window failed after its retries
            SizeMismatchError: If the server reports a different total
        """
        reassembler = Reassembler(file_name=file_name, total_size=total_size)
        progress = TransferProgress(loaded=0, total=total_size)
        url = self.api.file_url(access_code)
        starts = list(range(0, total_size, self.chunk_size))
        self.stats = ChunkStats(chunks=len(starts))

        logger.info(
            f"Downloading {access_code} ({total_size} bytes) as {len(starts)} chunks "
            f"[concurrency={self.download_concurrency}]"
        )

        def make_unit(start: int):
            async def unit() -> DownloadedRange:
                downloaded = await download_chunk(
                    self.api.client,
                    url,
                    {'rid': rid, 'start': start},
                    self.policy,
                    self._count_retry,
                )
                if downloaded.start != start:
                    raise ProtocolError(
                        f"Server answered offset {downloaded.start} for request at {start}"
                    )
                if downloaded.total != total_size:
                    raise SizeMismatchError(reassembler.file_name, total_size, downloaded.total)
                return downloaded
            return unit

        def on_result(index: int, downloaded: Optional[DownloadedRange], error: Optional[BaseException]) -> None:
            if error is not None:
                logger.error(f"Chunk at {starts[index]} failed: {error}")
                return
            if downloaded.name and downloaded.name != reassembler.file_name:
                reassembler.file_name = downloaded.name
                if on_name is not None:
                    on_name(downloaded.name)
            progress.loaded = reassembler.add(downloaded.start, downloaded.data)
            if on_progress is not None:
                on_progress(progress)

        scheduler = BoundedScheduler(self.download_concurrency)
        await scheduler.run([make_unit(s) for s in starts], on_result)

        if reassembler.received_bytes != total_size:
            raise SizeMismatchError(reassembler.file_name, total_size, reassembler.received_bytes)
        logger.info(f"Download of {reassembler.file_name} complete ({self.stats.retries} retries)")
        return reassembler
