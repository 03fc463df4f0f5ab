"""Top-level transfer policy: direct peer channel first, relayed HTTP chunks as fallback."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from common.constants import (
    DONE_POLL_ATTEMPTS,
    DONE_POLL_INTERVAL_SECONDS,
    DOWNLOAD_CONCURRENCY,
    HTTP_CHUNK_SIZE_BYTES,
    PEER_BUFFER_LOW_WATER_MARK_BYTES,
    PEER_CHUNK_SIZE_BYTES,
    SIGNALING_TIMEOUT_SECONDS,
    UPLOAD_CONCURRENCY,
)
from common.exceptions import (
    AggregateTransferError,
    FileFlowError,
    IntegrityError,
    PeerSessionError,
)
from common.logging_config import get_logger
from common.types import Role, TransferProgress, TransferStatus
from transfer.api import FileFlowApi, IceConfig
from transfer.chunk_transport import ChunkTransport, TransferFile
from transfer.peer_session import PeerConnectionFactory, PeerOutcome, PeerSession, create_peer_connection
from transfer.reassembler import write_artifact
from transfer.resilient import CHUNK_POLICY
from transfer.signaling import HttpRelaySignaling, SignalingChannel, WebSocketSignaling

logger = get_logger(__name__)

SIGNALING_MODES = ("websocket", "relay")


@dataclass(frozen=True)
class TransferSettings:
    """Tuning knobs for one orchestrator, usually built by ``Config.to_settings()``."""
    http_chunk_size: int = HTTP_CHUNK_SIZE_BYTES
    peer_chunk_size: int = PEER_CHUNK_SIZE_BYTES
    upload_concurrency: int = UPLOAD_CONCURRENCY
    download_concurrency: int = DOWNLOAD_CONCURRENCY
    chunk_max_attempts: int = CHUNK_POLICY.max_attempts
    chunk_timeout: float = CHUNK_POLICY.timeout
    peer_enabled: bool = True
    signaling_mode: str = "websocket"
    signaling_timeout: float = SIGNALING_TIMEOUT_SECONDS
    peer_low_water_mark: int = PEER_BUFFER_LOW_WATER_MARK_BYTES
    done_poll_attempts: int = DONE_POLL_ATTEMPTS
    done_poll_interval: float = DONE_POLL_INTERVAL_SECONDS

    def __post_init__(self):
        if self.signaling_mode not in SIGNALING_MODES:
            raise ValueError(f"Unknown signaling mode: {self.signaling_mode}")


class Transport(str, Enum):
    PEER = "p2p"
    HTTP = "http"


@dataclass
class TransferSession:
    """State of the single transfer an orchestrator is running."""
    access_code: str
    role: Role
    progress: TransferProgress = field(default_factory=TransferProgress)
    transport: Optional[Transport] = None
    status: Optional[TransferStatus] = None
    reason: Optional[str] = None
    fallback_reasons: List[str] = field(default_factory=list)


@dataclass
class TransferResult:
    """Terminal, user-facing result of a send or receive."""
    status: TransferStatus
    reason: Optional[str] = None
    transport: Optional[Transport] = None
    file_name: Optional[str] = None
    path: Optional[Path] = None
    bytes_transferred: int = 0
    confirmed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == TransferStatus.SUCCESS


SignalingFactory = Callable[[FileFlowApi, str, Role, Optional[str]], SignalingChannel]
ProgressCallback = Callable[[TransferProgress], None]
StatusCallback = Callable[[str], None]


class TransferOrchestrator:
    """
    Decides which transport moves the file and owns the TransferSession.

    Low-level components raise typed errors; this class is the only place
    that converts them into a different transport or into a terminal
    ``TransferResult``.
    """

    def __init__(
        self,
        api: FileFlowApi,
        settings: Optional[TransferSettings] = None,
        signaling_factory: Optional[SignalingFactory] = None,
        peer_factory: PeerConnectionFactory = create_peer_connection,
    ):
        self.api = api
        self.settings = settings or TransferSettings()
        self.signaling_factory = signaling_factory or self._default_signaling
        self.peer_factory = peer_factory
        self.session: Optional[TransferSession] = None

    def _default_signaling(
        self, api: FileFlowApi, access_code: str, role: Role, rid: Optional[str]
    ) -> SignalingChannel:
        if self.settings.signaling_mode == "relay":
            return HttpRelaySignaling(api, access_code, role, rid=rid)
        return WebSocketSignaling(api.websocket_url(access_code, role, rid), role)

    def _chunk_transport(self) -> ChunkTransport:
        s = self.settings
        return ChunkTransport(
            self.api,
            chunk_size=s.http_chunk_size,
            upload_concurrency=s.upload_concurrency,
            download_concurrency=s.download_concurrency,
            policy=CHUNK_POLICY.with_overrides(max_attempts=s.chunk_max_attempts, timeout=s.chunk_timeout),
        )

    def _progress_relay(self, on_progress: Optional[ProgressCallback]) -> ProgressCallback:
        def relay(progress: TransferProgress) -> None:
            self.session.progress.loaded = progress.loaded
            self.session.progress.total = progress.total
            if on_progress is not None:
                on_progress(self.session.progress)
        return relay

    def _finish(self, status: TransferStatus, reason: Optional[str] = None, **fields) -> TransferResult:
        session = self.session
        session.status = status
        session.reason = reason
        result = TransferResult(
            status=status,
            reason=reason,
            transport=session.transport,
            bytes_transferred=session.progress.loaded,
            **fields,
        )
        if result.succeeded:
            logger.info(
                f"Transfer {session.access_code} [{session.role.value}] succeeded over "
                f"{session.transport.value if session.transport else 'nothing'}"
            )
        else:
            logger.error(f"Transfer {session.access_code} [{session.role.value}] failed: {reason}")
        return result

    async def _peer_config(self) -> Optional[IceConfig]:
        if not self.settings.peer_enabled:
            logger.info("Peer transfer disabled, using HTTP relay")
            return None
        ice_config = await self.api.get_ice_config()
        if ice_config is None:
            logger.info("No peer configuration available, using HTTP relay")
        return ice_config

    async def _try_peer(self, ice_config: IceConfig, on_status: Optional[StatusCallback], **kwargs) -> Optional[PeerOutcome]:
        """
        Run one PeerSession.

        Returns:
            The successful outcome, or None when the caller must fall back
        """
        session = self.session
        session.transport = Transport.PEER
        rid = kwargs.get('receiver_id')
        peer = PeerSession(
            role=session.role,
            access_code=session.access_code,
            signaling=self.signaling_factory(self.api, session.access_code, session.role, rid),
            ice_config=ice_config,
            peer_factory=self.peer_factory,
            chunk_size=self.settings.peer_chunk_size,
            low_water_mark=self.settings.peer_low_water_mark,
            signaling_timeout=self.settings.signaling_timeout,
            on_status=on_status,
            **kwargs,
        )
        try:
            outcome = await peer.run()
        except PeerSessionError as e:
            logger.warning(f"Peer session error, degrading to HTTP relay: {e}")
            session.fallback_reasons.append("internal_error")
            return None

        if outcome.succeeded:
            return outcome
        session.fallback_reasons.append(outcome.reason)
        logger.info(f"Falling back to HTTP relay for {session.access_code}: {outcome.reason}")
        return None

    def _start_http(self, total: int, on_status: Optional[StatusCallback]) -> None:
        self.session.transport = Transport.HTTP
        self.session.progress.reset(total)
        if on_status is not None:
            on_status("http")

    async def send(
        self,
        access_code: str,
        file: TransferFile,
        on_progress: Optional[ProgressCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> TransferResult:
        """
        Deliver ``file`` to whoever holds ``access_code``.

        Returns:
            TransferResult; ``confirmed`` tells whether the receiver reported
            completion within the polling window
        """
        self.session = TransferSession(
            access_code=access_code,
            role=Role.SENDER,
            progress=TransferProgress(loaded=0, total=file.size),
        )
        relay = self._progress_relay(on_progress)

        try:
            ice_config = await self._peer_config()
            outcome = None
            if ice_config is not None:
                outcome = await self._try_peer(ice_config, on_status, file=file, on_progress=relay)

            if outcome is None:
                self._start_http(file.size, on_status)
                await self._chunk_transport().upload(access_code, file, relay)
        except AggregateTransferError as e:
            return self._finish(TransferStatus.ERROR, f"Upload failed: {e}", file_name=file.name)
        except FileFlowError as e:
            return self._finish(TransferStatus.ERROR, str(e) or type(e).__name__, file_name=file.name)

        confirmed = await self.wait_for_done(access_code)
        return self._finish(TransferStatus.SUCCESS, file_name=file.name, confirmed=confirmed)

    async def receive(
        self,
        access_code: str,
        receiver_id: str,
        output_dir: Path,
        on_progress: Optional[ProgressCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> TransferResult:
        """
        Fetch the file behind ``access_code`` into ``output_dir``.

        Args:
            access_code: Transfer access code
            receiver_id: Persisted receiver id (``rid``) bound to this transfer
            output_dir: Directory for the artifact
        """
        self.session = TransferSession(access_code=access_code, role=Role.RECEIVER)
        relay = self._progress_relay(on_progress)

        try:
            status = await self.api.get_status(access_code)
            if status is None:
                return self._finish(TransferStatus.ERROR, f"Unknown access code: {access_code}")
            file_name = status.file_name or ""
            file_size = status.file_size or 0
            self.session.progress.total = file_size

            ice_config = await self._peer_config()
            outcome = None
            if ice_config is not None:
                outcome = await self._try_peer(ice_config, on_status, receiver_id=receiver_id, on_progress=relay)

            if outcome is not None:
                file_name = outcome.file_name or file_name
                path = write_artifact(output_dir, file_name, outcome.content or b"")
            else:
                self._start_http(file_size, on_status)
                reassembler = await self._chunk_transport().download(
                    access_code, receiver_id, file_size, file_name=file_name, on_progress=relay
                )
                file_name = reassembler.file_name or file_name
                path = reassembler.save(output_dir)
        except AggregateTransferError as e:
            return self._finish(TransferStatus.ERROR, f"Download failed: {e}")
        except IntegrityError as e:
            return self._finish(TransferStatus.ERROR, f"Received file is corrupt: {e}")
        except FileFlowError as e:
            return self._finish(TransferStatus.ERROR, str(e) or type(e).__name__)
        except OSError as e:
            return self._finish(TransferStatus.ERROR, f"Could not write file: {e}")

        confirmed = await self.api.mark_done(access_code)
        return self._finish(TransferStatus.SUCCESS, file_name=file_name, path=path, confirmed=confirmed)

    async def wait_for_done(self, access_code: str) -> bool:
        """
        Poll the status endpoint until the receiver reports completion.

        Failure to confirm is not an error.

        Returns:
            True if ``done`` was observed within the polling window
        """
        for attempt in range(self.settings.done_poll_attempts):
            try:
                status = await self.api.get_status(access_code)
            except FileFlowError as e:
                logger.debug(f"Completion poll {attempt + 1} for {access_code} failed: {e}")
                status = None
            if status is not None and status.done:
                return True
            if attempt + 1 < self.settings.done_poll_attempts:
                await asyncio.sleep(self.settings.done_poll_interval)
        logger.info(f"Receiver did not confirm {access_code} within the polling window")
        return False
