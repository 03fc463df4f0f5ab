"""Tests for transport selection and fallback in the orchestrator."""

import asyncio
import os

import httpx
import pytest

from common.types import Role, TransferStatus
from transfer.chunk_transport import TransferFile
from transfer.orchestrator import TransferOrchestrator, TransferSettings, Transport
from transfer.signaling import MemorySignaling


@pytest.fixture
def settings():
    return TransferSettings(
        http_chunk_size=1000,
        peer_chunk_size=4096,
        signaling_timeout=0.2,
        done_poll_attempts=3,
        done_poll_interval=0,
    )


def dropped_signaling(api, access_code, role, rid):
    channel = MemorySignaling(role)
    channel.drop()
    return channel


class TestSend:

    @pytest.mark.asyncio
    async def test_relay_only_when_peer_config_absent(self, relay_server, make_api, settings):
        content = os.urandom(2500)
        relay_server.done = True
        statuses = []

        async with make_api() as api:
            orchestrator = TransferOrchestrator(api, settings)
            result = await orchestrator.send(
                relay_server.code, TransferFile.from_bytes('a.bin', content), on_status=statuses.append
            )

        assert result.status == TransferStatus.SUCCESS
        assert result.transport == Transport.HTTP
        assert result.bytes_transferred == 2500
        assert result.confirmed
        assert relay_server.uploaded_bytes() == content
        assert statuses == ['http']
        assert orchestrator.session.fallback_reasons == []

    @pytest.mark.asyncio
    async def test_unconfirmed_completion_is_not_an_error(self, relay_server, make_api, settings):
        async with make_api() as api:
            result = await TransferOrchestrator(api, settings).send(
                relay_server.code, TransferFile.from_bytes('a.bin', b'abc')
            )

        assert result.succeeded
        assert result.confirmed is False

    @pytest.mark.asyncio
    async def test_peer_fallback_resets_progress_and_uses_relay(
        self, relay_server, make_api, settings, ice_config_payload
    ):
        relay_server.ice_config = ice_config_payload
        content = b'q' * 1800
        loaded = []

        async with make_api() as api:
            orchestrator = TransferOrchestrator(api, settings, signaling_factory=dropped_signaling)
            result = await orchestrator.send(
                relay_server.code,
                TransferFile.from_bytes('q.bin', content),
                on_progress=lambda p: loaded.append(p.loaded),
            )

        assert result.succeeded
        assert result.transport == Transport.HTTP
        assert orchestrator.session.fallback_reasons == ['signal_closed']
        assert relay_server.uploaded_bytes() == content
        assert loaded[-1] == 1800

    @pytest.mark.asyncio
    async def test_disabled_peer_mode_skips_config_lookup(self, relay_server, make_api, settings, ice_config_payload):
        relay_server.ice_config = ice_config_payload
        disabled = TransferSettings(http_chunk_size=1000, peer_enabled=False, done_poll_attempts=1)

        async with make_api() as api:
            result = await TransferOrchestrator(api, disabled).send(
                relay_server.code, TransferFile.from_bytes('a.bin', b'abc')
            )

        assert result.transport == Transport.HTTP
        assert not any(r.url.path.endswith('-config') for r in relay_server.requests)

    @pytest.mark.asyncio
    async def test_failed_chunks_become_error_result(self, relay_server, make_api, settings):
        relay_server.upload_script[1000] = [httpx.Response(400, json={'code': 400, 'message': 'bad'})]

        async with make_api() as api:
            result = await TransferOrchestrator(api, settings).send(
                relay_server.code, TransferFile.from_bytes('a.bin', b'a' * 3000)
            )

        assert result.status == TransferStatus.ERROR
        assert result.reason == 'Upload failed: Some tasks failed. Total failed: 1 of 3'


class TestReceive:

    @pytest.mark.asyncio
    async def test_relay_download_saves_and_marks_done(self, relay_server, make_api, settings, tmp_path):
        content = os.urandom(4321)
        relay_server.host('photo.jpg', content)
        relay_server.download_chunk_size = 1000

        async with make_api() as api:
            result = await TransferOrchestrator(api, settings).receive(relay_server.code, 'rid-7', tmp_path)

        assert result.succeeded
        assert result.transport == Transport.HTTP
        assert result.path == tmp_path / 'photo.jpg'
        assert result.path.read_bytes() == content
        assert result.confirmed
        assert relay_server.done

    @pytest.mark.asyncio
    async def test_unknown_code(self, make_api, settings, tmp_path):
        async with make_api() as api:
            result = await TransferOrchestrator(api, settings).receive('zzz', 'rid', tmp_path)

        assert result.status == TransferStatus.ERROR
        assert result.reason == 'Unknown access code: zzz'

    @pytest.mark.asyncio
    async def test_server_size_disagreement_fails_transfer(self, relay_server, make_api, settings, tmp_path):
        relay_server.host('x.bin', b'x' * 1500)
        relay_server.file_size = 2000
        relay_server.download_chunk_size = 1000

        async with make_api() as api:
            result = await TransferOrchestrator(api, settings).receive(relay_server.code, 'rid', tmp_path)

        assert result.status == TransferStatus.ERROR
        assert list(tmp_path.iterdir()) == []


class TestPeerEndToEnd:

    @pytest.mark.asyncio
    async def test_direct_transfer(self, relay_server, make_api, settings, peer_link, ice_config_payload, tmp_path):
        relay_server.ice_config = ice_config_payload
        relay_server.known = True
        relay_server.file_name = 'p.bin'
        relay_server.file_size = 20000
        content = os.urandom(20000)
        sender_end, receiver_end = MemorySignaling.pair()
        ends = {Role.SENDER: sender_end, Role.RECEIVER: receiver_end}

        def signaling(api, access_code, role, rid):
            return ends[role]

        confirm_settings = TransferSettings(
            peer_chunk_size=4096, signaling_timeout=2, done_poll_attempts=200, done_poll_interval=0.01
        )

        async with make_api() as send_api, make_api() as receive_api:
            sender = TransferOrchestrator(send_api, confirm_settings, signaling, peer_link.factory)
            receiver = TransferOrchestrator(receive_api, confirm_settings, signaling, peer_link.factory)
            sent, received = await asyncio.wait_for(asyncio.gather(
                sender.send(relay_server.code, TransferFile.from_bytes('p.bin', content)),
                receiver.receive(relay_server.code, 'rid-1', tmp_path),
            ), timeout=10)

        assert sent.succeeded and received.succeeded
        assert sent.transport == Transport.PEER
        assert received.transport == Transport.PEER
        assert received.path.read_bytes() == content
        assert sent.confirmed
        assert relay_server.uploaded == {}
