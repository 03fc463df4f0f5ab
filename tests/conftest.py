"""Shared pytest fixtures for all tests."""

import asyncio
import json
import re
from collections import defaultdict
from typing import Dict, List, Optional

import httpx
import pytest
from aiortc import RTCSessionDescription
from pyee.asyncio import AsyncIOEventEmitter

from cli.config import Config
from common.constants import API_BASE_PATH
from transfer.api import FileFlowApi
from transfer.resilient import RetryPolicy


BASE_URL = 'http://test'


@pytest.fixture
def temp_config_dir(tmp_path):
    """
    Create temporary config directory.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to temporary .fileflow directory
    """
    config_dir = tmp_path / '.fileflow'
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def temp_config(temp_config_dir, monkeypatch):
    """
    Create temporary config instance with environment overrides cleared.

    Args:
        temp_config_dir: Temporary config directory fixture

    Returns:
        Config instance with temp config file
    """
    for name in Config.ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return Config(temp_config_dir / 'config.json')


@pytest.fixture
def sample_file(tmp_path):
    """
    Create a sample file for testing transfers.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to sample text file
    """
    file_path = tmp_path / 'test.txt'
    file_path.write_text('Sample content for testing')
    return file_path


@pytest.fixture
def fast_policy():
    """Retry policy without backoff delays."""
    return RetryPolicy(max_attempts=5, base_delay=0, max_delay=0, jitter=0, timeout=5)


# ----------------------------------------------------------------------
# Fake relay server
# ----------------------------------------------------------------------

def parse_multipart(request: httpx.Request) -> Dict[str, bytes]:
    """Split a multipart/form-data body into ``{field name: raw value}``."""
    content_type = request.headers['content-type']
    boundary = content_type.split('boundary=')[1].encode()
    fields = {}
    for part in request.content.split(b'--' + boundary):
        if part.startswith(b'\r\n'):
            part = part[2:]
        if part.endswith(b'\r\n'):
            part = part[:-2]
        if not part or part == b'--':
            continue
        headers, _, body = part.partition(b'\r\n\r\n')
        match = re.search(rb'name="([^"]+)"', headers)
        if match:
            fields[match.group(1).decode()] = body
    return fields


class FakeRelayServer:
    """
    In-memory stand-in for the relay server's /api/fileflow surface.

    ``upload_script`` / ``download_script`` map a chunk start offset to a list
    of responses returned (and consumed) before the normal behaviour.
    """

    def __init__(self, code: str = 'abc123'):
        self.code = code
        self.file_name: Optional[str] = None
        self.file_size: Optional[int] = None
        self.content: Optional[bytes] = None
        self.download_chunk_size = 1024 * 1024
        self.known = False
        self.done = False
        self.is_using = False
        self.ice_config: Optional[dict] = None
        self.uploaded: Dict[int, bytes] = {}
        self.upload_infos: List[dict] = []
        self.upload_attempts: Dict[int, int] = defaultdict(int)
        self.upload_script: Dict[int, List[httpx.Response]] = {}
        self.download_script: Dict[int, List[httpx.Response]] = {}
        self.download_starts: List[int] = []
        self.signals: Dict[str, List[dict]] = {'sender': [], 'receiver': []}
        self.requests: List[httpx.Request] = []

    def host(self, name: str, content: bytes) -> None:
        """Make a file available for download."""
        self.known = True
        self.file_name = name
        self.file_size = len(content)
        self.content = content

    def uploaded_bytes(self) -> bytes:
        return b''.join(self.uploaded[start] for start in sorted(self.uploaded))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path[len(API_BASE_PATH):]
        parts = [p for p in path.split('/') if p]

        if path == '/id':
            self.known = True
            self.file_name = request.url.params['file_name']
            self.file_size = int(request.url.params['file_size'])
            return httpx.Response(200, json={'code': 200, 'success': True, 'data': {'id': self.code}})

        if path == '/webrtc-config':
            if self.ice_config is None:
                return httpx.Response(404)
            return httpx.Response(200, json=self.ice_config)

        if path == '/p2p-config':
            return httpx.Response(404)

        if len(parts) != 2 or parts[0] != self.code:
            return httpx.Response(404, json={'success': False, 'message': 'unknown id'})

        action = parts[1]
        if action == 'status':
            if not self.known:
                return httpx.Response(404, json={'success': False})
            return httpx.Response(200, json={'success': True, 'data': {
                'file_name': self.file_name,
                'file_size': self.file_size,
                'is_using': self.is_using,
                'done': self.done,
            }})
        if action == 'upload' and request.method == 'POST':
            return self._upload(request)
        if action == 'file':
            return self._download(request)
        if action == 'done' and request.method == 'PUT':
            self.done = True
            return httpx.Response(200, json={'success': True})
        if action == 'signal':
            return self._signal(request)
        return httpx.Response(405)

    def _upload(self, request: httpx.Request) -> httpx.Response:
        fields = parse_multipart(request)
        info = json.loads(fields['info'])
        start = info['start']
        self.upload_attempts[start] += 1
        scripted = self.upload_script.get(start)
        if scripted:
            return scripted.pop(0)
        self.upload_infos.append(info)
        self.uploaded[start] = fields['file']
        if start == 0:
            self.known = True
            self.file_name = info['filename']
            self.file_size = info['total']
        return httpx.Response(200, json={'code': 200, 'message': 'ok'})

    def _download(self, request: httpx.Request) -> httpx.Response:
        start = int(request.url.params['start'])
        self.download_starts.append(start)
        self.is_using = True
        scripted = self.download_script.get(start)
        if scripted:
            return scripted.pop(0)
        data = self.content[start:start + self.download_chunk_size]
        end = start + len(data) - 1
        return httpx.Response(206, content=data, headers={
            'Content-Range': f'bytes {start}-{end}/{len(self.content)}',
            'Content-Name': self.file_name,
        })

    def _signal(self, request: httpx.Request) -> httpx.Response:
        if request.method == 'POST':
            body = json.loads(request.content)
            self.signals[body['role']].append(body['message'])
            return httpx.Response(200, json={'success': True})
        role = request.url.params['role']
        since = int(request.url.params.get('since', 0))
        other = 'receiver' if role == 'sender' else 'sender'
        queue = self.signals[other]
        messages = [{'id': i + 1, 'message': m} for i, m in enumerate(queue) if i + 1 > since]
        return httpx.Response(200, json={'success': True, 'data': {'latest': len(queue), 'messages': messages}})


@pytest.fixture
def relay_server():
    """Fake relay server; pair with ``make_api`` to talk to it."""
    return FakeRelayServer()


@pytest.fixture
def make_api(relay_server):
    """
    Factory for FileFlowApi instances backed by the fake relay server.

    Returns:
        Callable taking an optional handler (defaults to the relay server)
    """
    def factory(handler=None) -> FileFlowApi:
        transport = httpx.MockTransport(handler or relay_server.handler)
        client = httpx.AsyncClient(transport=transport, base_url=BASE_URL)
        return FileFlowApi(BASE_URL, client=client)
    return factory


# ----------------------------------------------------------------------
# Fake WebRTC peers
# ----------------------------------------------------------------------

class FakeDataChannel(AsyncIOEventEmitter):
    """
    Data channel double: bytes sent are buffered, then delivered to the
    remote end on the next loop iteration.
    """

    def __init__(self, label: str = 'fileflow', ordered: bool = True):
        super().__init__()
        self.label = label
        self.ordered = ordered
        self.readyState = 'connecting'
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.peak_buffered = 0
        self.remote: Optional['FakeDataChannel'] = None
        self.sent = []

    def send(self, data) -> None:
        if self.readyState != 'open':
            raise ConnectionError('data channel is not open')
        size = len(data.encode() if isinstance(data, str) else data)
        self.bufferedAmount += size
        self.peak_buffered = max(self.peak_buffered, self.bufferedAmount)
        self.sent.append(data)
        asyncio.get_running_loop().call_soon(self._transmit, data, size)

    def _transmit(self, data, size: int) -> None:
        was_above = self.bufferedAmount > self.bufferedAmountLowThreshold
        self.bufferedAmount -= size
        if self.remote is not None and self.remote.readyState == 'open':
            self.remote.emit('message', data)
        if was_above and self.bufferedAmount <= self.bufferedAmountLowThreshold:
            self.emit('bufferedamountlow')

    def open(self) -> None:
        self.readyState = 'open'
        self.emit('open')

    def close(self) -> None:
        if self.readyState == 'closed':
            return
        self.readyState = 'closed'
        self.emit('close')
        if self.remote is not None:
            self.remote.close()


class FakePeerConnection(AsyncIOEventEmitter):
    """RTCPeerConnection double wired to a FakePeerLink."""

    def __init__(self, link: 'FakePeerLink', ice_config):
        super().__init__()
        self.link = link
        self.ice_config = ice_config
        self.connectionState = 'new'
        self.localDescription = None
        self.remoteDescription = None
        self.channel: Optional[FakeDataChannel] = None
        self.candidates = []
        self.closed = False

    def createDataChannel(self, label: str, ordered: bool = True) -> FakeDataChannel:
        self.channel = FakeDataChannel(label, ordered)
        return self.channel

    async def createOffer(self):
        return RTCSessionDescription(sdp='v=0 fake-offer', type='offer')

    async def createAnswer(self):
        return RTCSessionDescription(sdp='v=0 fake-answer', type='answer')

    async def setLocalDescription(self, description) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description) -> None:
        self.remoteDescription = description
        if description.type == 'answer':
            self.link.connect(self)

    async def addIceCandidate(self, candidate) -> None:
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.connectionState = 'closed'

    def fail(self) -> None:
        self.connectionState = 'failed'
        self.emit('connectionstatechange')


class FakePeerLink:
    """
    Connects the offering and answering FakePeerConnections.

    With ``auto_connect`` off the channel never opens, which lets tests
    drive the answering side by hand.
    """

    def __init__(self, auto_connect: bool = True):
        self.auto_connect = auto_connect
        self.connections: List[FakePeerConnection] = []

    def factory(self, ice_config) -> FakePeerConnection:
        pc = FakePeerConnection(self, ice_config)
        self.connections.append(pc)
        return pc

    def connect(self, offerer: FakePeerConnection) -> None:
        if not self.auto_connect:
            return
        answerer = next(pc for pc in self.connections if pc is not offerer)
        local = offerer.channel
        remote = FakeDataChannel(local.label, local.ordered)
        local.remote, remote.remote = remote, local
        asyncio.get_running_loop().call_soon(self._open, answerer, local, remote)

    @staticmethod
    def _open(answerer: FakePeerConnection, local: FakeDataChannel, remote: FakeDataChannel) -> None:
        answerer.connectionState = 'connected'
        answerer.emit('datachannel', remote)
        remote.open()
        local.open()


@pytest.fixture
def peer_link():
    return FakePeerLink()


@pytest.fixture
def ice_config_payload():
    return {'iceServers': [{'urls': 'stun:stun.example.org:3478'}]}
