"""HTTP client for the relay server's /api/fileflow endpoints."""

from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from common.constants import API_BASE_PATH, DEFAULT_REQUEST_TIMEOUT_SECONDS
from common.exceptions import FileFlowError, ProtocolError
from common.logging_config import get_logger
from common.types import Role
from transfer.resilient import (
    DEFAULT_POLICY,
    STATUS_POLICY,
    RetryPolicy,
    request_json_with_retry,
)

logger = get_logger(__name__)


class IceServer(BaseModel):
    """One STUN/TURN server entry."""
    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None

    @field_validator("urls", mode="before")
    @classmethod
    def _single_url(cls, value):
        return [value] if isinstance(value, str) else value


class IceConfig(BaseModel):
    """Peer connection configuration served by /webrtc-config."""
    ice_servers: List[IceServer] = Field(default_factory=list, alias="iceServers")

    model_config = {"populate_by_name": True}


class TransferStatusData(BaseModel):
    """Payload of GET /{id}/status."""
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    is_using: Optional[bool] = None
    done: Optional[bool] = None


class StatusResponse(BaseModel):
    success: bool = False
    code: Optional[int] = None
    message: Optional[str] = None
    data: Optional[TransferStatusData] = None


class SignalPollData(BaseModel):
    latest: int = 0
    messages: List[Dict[str, Any]] = Field(default_factory=list)


class SignalPollResponse(BaseModel):
    """Payload of GET /{id}/signal."""
    success: bool = False
    data: Optional[SignalPollData] = None


class FileFlowApi:
    """
    Client for the relay server surface consumed by the transfer core.

    All calls share one httpx.AsyncClient; the caller owns its lifetime
    through ``async with`` or ``close()``.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        policy: RetryPolicy = DEFAULT_POLICY,
    ):
        """
        Initialize API client.

        Args:
            base_url: Server origin, e.g. "http://localhost:8080"
            client: Optional preconfigured client (tests inject MockTransport)
            policy: Retry policy for control requests
        """
        self.base_url = base_url.rstrip('/')
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=DEFAULT_REQUEST_TIMEOUT_SECONDS,
        )
        self.policy = policy
        logger.info(f"Initialized FileFlowApi [base_url={self.base_url}]")

    async def __aenter__(self) -> 'FileFlowApi':
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    def url(self, path: str) -> str:
        return f"{self.base_url}{API_BASE_PATH}{path}"

    def upload_url(self, access_code: str) -> str:
        return self.url(f"/{access_code}/upload")

    def file_url(self, access_code: str) -> str:
        return self.url(f"/{access_code}/file")

    def signal_url(self, access_code: str) -> str:
        return self.url(f"/{access_code}/signal")

    def websocket_url(self, access_code: str, role: Role, rid: Optional[str] = None) -> str:
        """
        Build the WebSocket signaling URL scoped to access code and role.

        Args:
            access_code: Transfer access code
            role: Signaling role
            rid: Receiver id (required by the server for receivers)

        Returns:
            ws:// or wss:// URL matching the server origin scheme
        """
        parts = urlsplit(self.base_url)
        scheme = 'wss' if parts.scheme == 'https' else 'ws'
        params = {'role': role.value}
        if rid:
            params['rid'] = rid
        path = f"{parts.path}{API_BASE_PATH}/signal/{access_code}"
        return urlunsplit((scheme, parts.netloc, path, urlencode(params), ''))

    async def allocate_code(self, file_name: str, file_size: int) -> str:
        """
        Ask the server to issue an access code for a file.

        Raises:
            FileFlowError: If the server refuses or answers without an id
        """
        data, response = await request_json_with_retry(
            self.client,
            'GET',
            self.url('/id'),
            self.policy,
            params={'file_name': file_name, 'file_size': file_size},
        )
        if not response.is_success or not isinstance(data, dict) or not data.get('success'):
            message = data.get('message') if isinstance(data, dict) else None
            raise FileFlowError(message or f"Could not allocate access code (status {response.status_code})")
        try:
            return str(data['data']['id'])
        except (KeyError, TypeError):
            raise ProtocolError("Access code response carried no id")

    async def get_status(self, access_code: str) -> Optional[TransferStatusData]:
        """
        Fetch transfer status.

        Returns:
            Status data, or None when the server does not know the code
        """
        data, response = await request_json_with_retry(
            self.client, 'GET', self.url(f"/{access_code}/status"), STATUS_POLICY
        )
        if data is None:
            return None
        try:
            status = StatusResponse.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Malformed status response for {access_code}: {e}")
            return None
        if not status.success:
            return None
        return status.data or TransferStatusData()

    async def mark_done(self, access_code: str) -> bool:
        """
        Tell the server the receiver finished. Best effort: failures are logged.

        Returns:
            True if the server acknowledged
        """
        try:
            data, response = await request_json_with_retry(
                self.client, 'PUT', self.url(f"/{access_code}/done"), STATUS_POLICY, json={}
            )
        except FileFlowError as e:
            logger.warning(f"Could not mark {access_code} as done: {e}")
            return False
        return response.is_success and isinstance(data, dict) and bool(data.get('success'))

    async def get_ice_config(self) -> Optional[IceConfig]:
        """
        Load peer connection configuration.

        Tries /webrtc-config, then /p2p-config.

        Returns:
            IceConfig with at least one server, or None to skip the peer path
        """
        for path in ('/webrtc-config', '/p2p-config'):
            try:
                data, response = await request_json_with_retry(
                    self.client, 'GET', self.url(path), STATUS_POLICY
                )
            except FileFlowError as e:
                logger.debug(f"Peer config {path} unavailable: {e}")
                continue
            if not response.is_success or not isinstance(data, dict):
                continue
            if isinstance(data.get('data'), dict):
                data = data['data']
            try:
                config = IceConfig.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Malformed peer config from {path}: {e}")
                continue
            if config.ice_servers:
                return config
        return None
