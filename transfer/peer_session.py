"""
Direct peer-to-peer transfer over a WebRTC data channel.

A PeerSession is a finite-state machine:

    idle -> signaling -> connecting -> streaming -> done
                                    \\-> falling_back (from any non-terminal state)

Every callback (signaling socket, peer connection, data channel, timer)
only enqueues a SessionEvent; a single loop consumes events and performs
transitions, so the state is never mutated from two places.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from common.constants import (
    DATA_CHANNEL_LABEL,
    PEER_BUFFER_LOW_WATER_MARK_BYTES,
    PEER_CHUNK_SIZE_BYTES,
    SIGNALING_TIMEOUT_SECONDS,
)
from common.exceptions import FileFlowError, IntegrityError, PeerSessionError, ProtocolError
from common.logging_config import get_logger
from common.protocol import FILE_END, ChannelControl, FileMeta, SignalMessage
from common.types import Role, TransferProgress, TransferStatus
from transfer.api import IceConfig
from transfer.chunk_transport import TransferFile
from transfer.reassembler import Reassembler
from transfer.signaling import SignalingChannel

logger = get_logger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    SIGNALING = "signaling"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DONE = "done"
    FALLING_BACK = "falling_back"


TERMINAL_STATES = (SessionState.DONE, SessionState.FALLING_BACK)


@dataclass
class SessionEvent:
    kind: str
    payload: Any = None


@dataclass
class PeerOutcome:
    """Terminal result of a peer session: success or a fallback reason."""
    status: TransferStatus
    reason: Optional[str] = None
    file_name: Optional[str] = None
    content: Optional[bytes] = None
    bytes_transferred: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == TransferStatus.SUCCESS


PeerConnectionFactory = Callable[[Optional[IceConfig]], Any]


def create_peer_connection(ice_config: Optional[IceConfig]) -> RTCPeerConnection:
    """Build an aiortc peer connection from the server's ICE configuration."""
    servers = []
    if ice_config is not None:
        servers = [
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_config.ice_servers
        ]
    return RTCPeerConnection(RTCConfiguration(iceServers=servers))


def parse_remote_candidate(candidate: dict):
    """
    Convert a browser-style candidate dict into an aiortc RTCIceCandidate.

    Returns:
        The candidate, or None for an end-of-candidates marker
    """
    line = (candidate or {}).get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    parsed = candidate_from_sdp(line)
    parsed.sdpMid = candidate.get("sdpMid")
    parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return parsed


def serialize_local_candidate(candidate) -> Optional[dict]:
    if candidate is None:
        return None
    if isinstance(candidate, dict):
        return candidate
    return {
        "candidate": f"candidate:{candidate_to_sdp(candidate)}",
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class PeerSession:
    """
    One side of a direct transfer.

    The sender waits for ``ready``, offers a data channel and streams the
    file; the receiver announces ``ready``, answers and reassembles. Either
    side reports exactly one PeerOutcome and releases the data channel, peer
    connection and signaling channel on every exit path.
    """

    def __init__(
        self,
        role: Role,
        access_code: str,
        signaling: SignalingChannel,
        ice_config: Optional[IceConfig] = None,
        file: Optional[TransferFile] = None,
        receiver_id: Optional[str] = None,
        peer_factory: PeerConnectionFactory = create_peer_connection,
        chunk_size: int = PEER_CHUNK_SIZE_BYTES,
        low_water_mark: int = PEER_BUFFER_LOW_WATER_MARK_BYTES,
        signaling_timeout: float = SIGNALING_TIMEOUT_SECONDS,
        on_progress: Optional[Callable[[TransferProgress], None]] = None,
        on_status: Optional[Callable[[str], None]] = None,
        on_metadata: Optional[Callable[[str, int], None]] = None,
    ):
        if role == Role.SENDER and file is None:
            raise ValueError("A sending session needs a file")
        if role == Role.RECEIVER and not receiver_id:
            raise ValueError("A receiving session needs a receiver id")

        self.role = role
        self.access_code = access_code
        self.signaling = signaling
        self.ice_config = ice_config
        self.file = file
        self.receiver_id = receiver_id
        self.peer_factory = peer_factory
        self.chunk_size = chunk_size
        self.low_water_mark = low_water_mark
        self.signaling_timeout = signaling_timeout
        self.on_progress = on_progress
        self.on_status = on_status
        self.on_metadata = on_metadata

        self.state = SessionState.IDLE
        self.history: List[SessionState] = [SessionState.IDLE]
        self.outcome: Optional[PeerOutcome] = None
        self.progress = TransferProgress(loaded=0, total=file.size if file else 0)

        self.pc = None
        self.channel = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._signal_reader: Optional[asyncio.Task] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._buffer_low = asyncio.Event()
        self._pending_candidates: List[dict] = []
        self._remote_description_set = False
        self._end_sent = False

        # Receiver bookkeeping
        self._reassembler = Reassembler()
        self._meta_received = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> PeerOutcome:
        """
        Drive the session to a terminal state.

        Returns:
            PeerOutcome with status success or fallback

        Raises:
            PeerSessionError: On an internal failure that cannot be expressed
                as a controlled fallback
        """
        loop = asyncio.get_running_loop()
        self._transition(SessionState.SIGNALING)
        self._timer = loop.call_later(self.signaling_timeout, self._post, "timeout")

        try:
            try:
                await self.signaling.connect()
            except FileFlowError as e:
                logger.warning(f"Signaling unavailable for {self.access_code}: {e}")
                await self._fallback("signal_unavailable", notify=False)
                return self.outcome

            self._signal_reader = loop.create_task(self._pump_signaling())
            if self.role == Role.RECEIVER:
                await self.signaling.send(SignalMessage.ready())

            while self.outcome is None:
                event = await self._events.get()
                await self._handle(event)
            return self.outcome

        except PeerSessionError:
            await self._notify_internal_failure()
            raise
        except Exception as e:
            logger.error(f"Peer session {self.access_code} failed: {e}", exc_info=True)
            await self._notify_internal_failure()
            raise PeerSessionError(f"Peer session failed: {e}") from e
        finally:
            await self._release()

    def _post(self, kind: str, payload: Any = None) -> None:
        self._events.put_nowait(SessionEvent(kind, payload))

    def _transition(self, state: SessionState) -> None:
        if self.state in TERMINAL_STATES or self.state == state:
            return
        logger.debug(f"Peer session {self.access_code} [{self.role.value}]: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _pump_signaling(self) -> None:
        while True:
            message = await self.signaling.receive()
            if message is None:
                self._post("signal_closed")
                return
            self._post("signal", message)

    async def _release(self) -> None:
        self._cancel_timer()
        for task in (self._stream_task, self._signal_reader):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if self.channel is not None:
            try:
                self.channel.close()
            except Exception as e:
                logger.debug(f"Closing data channel failed: {e}")
        if self.pc is not None:
            try:
                await self.pc.close()
            except Exception as e:
                logger.debug(f"Closing peer connection failed: {e}")
        await self.signaling.close()

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _fallback(self, reason: str, notify: bool) -> None:
        if self.outcome is not None:
            return
        if notify:
            await self.signaling.send(SignalMessage.fallback(reason))
        logger.info(f"Peer session {self.access_code} [{self.role.value}] falling back: {reason}")
        self._transition(SessionState.FALLING_BACK)
        self.outcome = PeerOutcome(status=TransferStatus.FALLBACK, reason=reason)
        if self.on_status is not None:
            self.on_status(f"fallback:{reason}")

    def _succeed(self, file_name: Optional[str] = None, content: Optional[bytes] = None) -> None:
        if self.outcome is not None:
            return
        self._transition(SessionState.DONE)
        self.outcome = PeerOutcome(
            status=TransferStatus.SUCCESS,
            file_name=file_name,
            content=content,
            bytes_transferred=self.progress.loaded,
        )
        logger.info(f"Peer session {self.access_code} [{self.role.value}] done: {self.progress.loaded} bytes")
        if self.on_status is not None:
            self.on_status("p2p_done")

    async def _notify_internal_failure(self) -> None:
        if self.outcome is None:
            await self.signaling.send(SignalMessage.fallback("internal_error"))

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def _handle(self, event: SessionEvent) -> None:
        kind = event.kind
        if kind == "timeout":
            await self._fallback("timeout", notify=True)
        elif kind == "signal_closed":
            await self._fallback("signal_closed", notify=False)
        elif kind == "signal":
            await self._handle_signal(event.payload)
        elif kind == "local_candidate":
            candidate = serialize_local_candidate(event.payload)
            if candidate is not None:
                await self.signaling.send(SignalMessage.ice(candidate))
        elif kind == "connection_state":
            if event.payload == "failed":
                await self._fallback("connection_failed", notify=True)
        elif kind == "channel_open":
            self._on_channel_open()
        elif kind == "channel_error":
            await self._fallback("datachannel_error", notify=True)
        elif kind == "channel_closed":
            if not self._end_sent:
                await self._fallback("channel_closed", notify=True)
            else:
                logger.debug(f"Channel for {self.access_code} closed after file end")
        elif kind == "channel_message":
            await self._handle_channel_message(event.payload)
        elif kind == "stream_done":
            await self.signaling.send(SignalMessage.done())
            self._succeed(file_name=self.file.name)
        elif kind == "stream_failed":
            await self._fallback(event.payload or "send_failed", notify=True)

    async def _handle_signal(self, message: SignalMessage) -> None:
        kind = message.type
        if kind == "ready" and self.role == Role.SENDER:
            if self.pc is None:
                await self._start_offer()
        elif kind == "offer" and self.role == Role.RECEIVER:
            await self._accept_offer(message)
        elif kind == "answer" and self.role == Role.SENDER:
            if self.pc is not None:
                await self.pc.setRemoteDescription(_description(message))
                self._remote_description_set = True
                await self._flush_candidates()
        elif kind == "ice":
            self._pending_candidates.append(message.candidate or {})
            await self._flush_candidates()
        elif kind == "fallback_http":
            await self._fallback("peer_fallback", notify=False)
        elif kind == "error":
            await self._fallback(f"signal_error:{message.message or 'unknown'}", notify=False)
        else:
            logger.debug(f"Ignoring signal {kind} in state {self.state.value}")

    async def _flush_candidates(self) -> None:
        if self.pc is None or not self._remote_description_set:
            return
        while self._pending_candidates:
            candidate = parse_remote_candidate(self._pending_candidates.pop(0))
            if candidate is not None:
                await self.pc.addIceCandidate(candidate)

    # ------------------------------------------------------------------
    # Connection setup
    # ------------------------------------------------------------------

    def _create_peer_connection(self):
        pc = self.peer_factory(self.ice_config)
        pc.on("connectionstatechange", lambda: self._post("connection_state", pc.connectionState))
        pc.on("icecandidate", lambda candidate: self._post("local_candidate", candidate))
        return pc

    def _bind_channel(self, channel) -> None:
        self.channel = channel
        channel.on("open", lambda: self._post("channel_open"))
        channel.on("message", lambda data: self._post("channel_message", data))
        channel.on("close", self._on_channel_close)
        channel.on("error", lambda *args: self._post("channel_error"))
        channel.on("bufferedamountlow", self._buffer_low.set)
        if getattr(channel, "readyState", None) == "open":
            self._post("channel_open")

    async def _start_offer(self) -> None:
        self.pc = self._create_peer_connection()
        self._bind_channel(self.pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        await self.signaling.send(SignalMessage.offer(self.pc.localDescription.sdp))
        self._transition(SessionState.CONNECTING)

    async def _accept_offer(self, message: SignalMessage) -> None:
        if self.pc is None:
            self.pc = self._create_peer_connection()
            self.pc.on("datachannel", self._bind_channel)
        await self.pc.setRemoteDescription(_description(message))
        self._remote_description_set = True
        await self._flush_candidates()
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        await self.signaling.send(SignalMessage.answer(self.pc.localDescription.sdp))
        self._transition(SessionState.CONNECTING)

    def _on_channel_close(self) -> None:
        # a drain waiting on bufferedamountlow would otherwise never wake
        self._buffer_low.set()
        self._post("channel_closed")

    def _on_channel_open(self) -> None:
        if self.state == SessionState.STREAMING:
            return
        self._cancel_timer()
        self._transition(SessionState.STREAMING)
        if self.role == Role.SENDER:
            self._stream_task = asyncio.get_running_loop().create_task(self._run_stream())

    # ------------------------------------------------------------------
    # Sender streaming
    # ------------------------------------------------------------------

    async def _run_stream(self) -> None:
        try:
            await self._stream_file()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Streaming {self.file.name} failed: {e}")
            self._post("stream_failed", str(e) or "send_failed")
            return
        self._post("stream_done")

    async def _stream_file(self) -> None:
        channel = self.channel
        channel.send(FileMeta(name=self.file.name, size=self.file.size, chunk_size=self.chunk_size).to_json())

        offset = 0
        while offset < self.file.size:
            await self._wait_buffer_low(self.low_water_mark)
            data = self.file.read(offset, self.chunk_size)
            if not data:
                raise ProtocolError(f"{self.file.name} ended at {offset} of {self.file.size} bytes")
            channel.send(data)
            offset += len(data)
            self.progress.loaded = offset
            if self.on_progress is not None:
                self.on_progress(self.progress)

        channel.send(FILE_END)
        self._end_sent = True
        await self._wait_buffer_low(0)

    async def _wait_buffer_low(self, threshold: int) -> None:
        """Suspend until the channel's unsent bytes are at or below ``threshold``."""
        channel = self.channel
        channel.bufferedAmountLowThreshold = threshold
        while channel.bufferedAmount > threshold and channel.readyState == "open":
            self._buffer_low.clear()
            if channel.bufferedAmount <= threshold:
                break
            await self._buffer_low.wait()

    # ------------------------------------------------------------------
    # Receiver assembly
    # ------------------------------------------------------------------

    async def _handle_channel_message(self, data) -> None:
        if self.role != Role.RECEIVER:
            return
        if isinstance(data, str):
            control = ChannelControl.from_json(data)
            if control is None or control.type == "p2p_done":
                return
            if control.type == "file_meta":
                meta = control.as_meta(self._reassembler.file_name, self._reassembler.total_size)
                self._reassembler.file_name = meta.name
                self._reassembler.total_size = meta.size
                self.progress.total = meta.size
                self._meta_received = True
                if self.on_metadata is not None:
                    self.on_metadata(meta.name, meta.size)
                if self.progress.loaded >= meta.size:
                    await self._finalize()
            elif control.type == "file_end":
                await self._finalize()
            return

        received = self._reassembler.add(self.progress.loaded, bytes(data))
        self.progress.loaded = received
        if self.on_progress is not None and self.progress.total > 0:
            self.on_progress(self.progress)
        if self._meta_received and received >= self.progress.total:
            await self._finalize()

    async def _finalize(self) -> None:
        if not self._meta_received or not self._reassembler.file_name:
            await self._fallback("missing_metadata", notify=True)
            return
        if self.progress.loaded != self.progress.total:
            await self._fallback("size_mismatch", notify=True)
            return
        try:
            content = self._reassembler.finalize()
        except IntegrityError as e:
            logger.warning(f"Peer transfer of {self._reassembler.file_name} is inconsistent: {e}")
            await self._fallback("size_mismatch", notify=True)
            return
        self._succeed(file_name=self._reassembler.file_name, content=content)


def _description(message: SignalMessage) -> RTCSessionDescription:
    sdp = message.sdp or {}
    if not sdp.get("sdp") or sdp.get("type") not in ("offer", "answer"):
        raise ProtocolError(f"Signal {message.type} carried no usable session description")
    return RTCSessionDescription(sdp=sdp["sdp"], type=sdp["type"])
