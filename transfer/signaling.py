"""Signaling channels used to negotiate a direct peer connection."""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Optional, Tuple

import aiohttp
from pydantic import ValidationError

from common.constants import RELAY_SIGNAL_POLL_INTERVAL_SECONDS
from common.exceptions import FileFlowError, NetworkError
from common.logging_config import get_logger
from common.protocol import SignalMessage
from common.types import Role
from transfer.api import FileFlowApi, SignalPollResponse
from transfer.resilient import STATUS_POLICY, request_json_with_retry

logger = get_logger(__name__)


class SignalingChannel(ABC):
    """
    One signaling connection for one (access code, role) pair.

    ``receive()`` returns None once the channel is closed; ``send()`` is a
    no-op returning False when the channel is not open.
    """

    def __init__(self, role: Role):
        self.role = role
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel; raises NetworkError when the relay is unreachable."""

    @abstractmethod
    async def send(self, message: SignalMessage) -> bool:
        """Deliver a message to the other role."""

    @abstractmethod
    async def receive(self) -> Optional[SignalMessage]:
        """Next message from the other role, or None once closed."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""


class WebSocketSignaling(SignalingChannel):
    """Signaling over the relay server's WebSocket endpoint (aiohttp)."""

    def __init__(
        self,
        url: str,
        role: Role,
        session: Optional[aiohttp.ClientSession] = None,
        connect_timeout: float = 10.0,
    ):
        super().__init__(role)
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._connect_timeout = connect_timeout
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=20),
                timeout=self._connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            self._closed = True
            await self._close_session()
            raise NetworkError(f"Signaling connection failed: {e}") from e
        logger.debug(f"Signaling connected [role={self.role.value}]")

    async def send(self, message: SignalMessage) -> bool:
        if self._ws is None or self._ws.closed or self._closed:
            return False
        try:
            await self._ws.send_str(message.to_json())
            return True
        except (aiohttp.ClientError, ConnectionError) as e:
            logger.warning(f"Signaling send failed: {e}")
            return False

    async def receive(self) -> Optional[SignalMessage]:
        if self._ws is None:
            return None
        while not self._closed:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                parsed = SignalMessage.from_json(msg.data)
                if parsed is None:
                    logger.debug(f"Ignoring unparseable signal frame: {msg.data!r}")
                    continue
                return parsed
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                break
        self._closed = True
        return None

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        await self._close_session()

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class HttpRelaySignaling(SignalingChannel):
    """
    Signaling through the relay's polling endpoints.

    ``POST /{id}/signal`` with ``{role, rid, message}`` publishes a message;
    ``GET /{id}/signal?role=<own role>&since=<cursor>`` returns the messages
    the other role published after the cursor.
    """

    def __init__(
        self,
        api: FileFlowApi,
        access_code: str,
        role: Role,
        rid: Optional[str] = None,
        poll_interval: float = RELAY_SIGNAL_POLL_INTERVAL_SECONDS,
    ):
        super().__init__(role)
        self.api = api
        self.access_code = access_code
        self.rid = rid
        self.poll_interval = poll_interval
        self.cursor = 0
        self._pending: Deque[SignalMessage] = deque()
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def send(self, message: SignalMessage) -> bool:
        if not self._connected or self._closed:
            return False
        payload = {'role': self.role.value, 'message': message.to_dict()}
        if self.rid:
            payload['rid'] = self.rid
        try:
            data, response = await request_json_with_retry(
                self.api.client, 'POST', self.api.signal_url(self.access_code), STATUS_POLICY, json=payload
            )
        except FileFlowError as e:
            logger.warning(f"Relay signal send failed: {e}")
            return False
        return response.is_success and isinstance(data, dict) and bool(data.get('success'))

    async def receive(self) -> Optional[SignalMessage]:
        while not self._closed:
            if self._pending:
                return self._pending.popleft()
            try:
                fetched = await self._poll()
            except FileFlowError as e:
                logger.warning(f"Relay signal poll failed, closing channel: {e}")
                self._closed = True
                break
            if not fetched:
                await asyncio.sleep(self.poll_interval)
        return None

    async def _poll(self) -> int:
        params = {'role': self.role.value, 'since': self.cursor}
        data, response = await request_json_with_retry(
            self.api.client, 'GET', self.api.signal_url(self.access_code), STATUS_POLICY, params=params
        )
        if not response.is_success or data is None:
            return 0
        try:
            poll = SignalPollResponse.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Malformed relay signal response: {e}")
            return 0
        if not poll.success or poll.data is None:
            return 0
        self.cursor = max(self.cursor, poll.data.latest)
        count = 0
        for raw in poll.data.messages:
            parsed = SignalMessage.from_dict(raw.get('message', raw))
            if parsed is not None:
                self._pending.append(parsed)
                count += 1
        return count

    async def close(self) -> None:
        self._closed = True


class MemorySignaling(SignalingChannel):
    """In-process signaling; ``pair()`` returns connected sender and receiver ends."""

    def __init__(self, role: Role):
        super().__init__(role)
        self.peer: Optional['MemorySignaling'] = None
        self.sent = []
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._connected = False

    @classmethod
    def pair(cls) -> Tuple['MemorySignaling', 'MemorySignaling']:
        sender, receiver = cls(Role.SENDER), cls(Role.RECEIVER)
        sender.peer, receiver.peer = receiver, sender
        return sender, receiver

    async def connect(self) -> None:
        self._connected = True

    def deliver(self, message: SignalMessage) -> None:
        self._inbox.put_nowait(message)

    async def send(self, message: SignalMessage) -> bool:
        if not self._connected or self._closed:
            return False
        self.sent.append(message)
        if self.peer is not None and not self.peer.closed:
            self.peer.deliver(message)
        return True

    async def receive(self) -> Optional[SignalMessage]:
        if self._closed:
            return None
        message = await self._inbox.get()
        if message is None:
            self._closed = True
        return message

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._inbox.put_nowait(None)

    def drop(self) -> None:
        """Simulate the relay closing this end's connection."""
        self._inbox.put_nowait(None)
