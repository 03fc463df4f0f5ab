"""Tests for relayed chunk upload and download."""

import os

import httpx
import pytest

from common.exceptions import AggregateTransferError, ProtocolError
from transfer.chunk_transport import ChunkTransport, TransferFile

MIB = 1024 * 1024


@pytest.fixture
def payload():
    return os.urandom(3 * MIB)


class TestUpload:

    @pytest.mark.asyncio
    async def test_one_transient_failure_is_retried_exactly_once(self, relay_server, make_api, fast_policy, payload):
        relay_server.upload_script[MIB] = [httpx.Response(503, json={'code': 503})]
        percents = []

        async with make_api() as api:
            transport = ChunkTransport(api, chunk_size=MIB, upload_concurrency=4, policy=fast_policy)
            progress = await transport.upload(
                relay_server.code,
                TransferFile.from_bytes('big.bin', payload),
                on_progress=lambda p: percents.append(p.percent),
            )

        assert progress.percent == 100
        assert percents[-1] == 100
        assert transport.stats.chunks == 3
        assert transport.stats.retries == 1
        assert relay_server.upload_attempts == {0: 1, MIB: 2, 2 * MIB: 1}
        assert relay_server.uploaded_bytes() == payload

    @pytest.mark.asyncio
    async def test_upload_metadata_uses_inclusive_ends(self, relay_server, make_api, fast_policy):
        content = b'x' * 2500

        async with make_api() as api:
            transport = ChunkTransport(api, chunk_size=1000, policy=fast_policy)
            await transport.upload(relay_server.code, TransferFile.from_bytes('a.txt', content))

        infos = sorted(relay_server.upload_infos, key=lambda info: info['start'])
        assert [(i['start'], i['end'], i['total']) for i in infos] == [
            (0, 999, 2500), (1000, 1999, 2500), (2000, 2499, 2500),
        ]
        assert all(i['filename'] == 'a.txt' for i in infos)

    @pytest.mark.asyncio
    async def test_rejected_chunk_fails_after_all_others_finish(self, relay_server, make_api, fast_policy):
        relay_server.upload_script[1000] = [httpx.Response(200, json={'code': 413, 'message': 'too big'})]

        async with make_api() as api:
            transport = ChunkTransport(api, chunk_size=1000, upload_concurrency=2, policy=fast_policy)
            with pytest.raises(AggregateTransferError) as exc_info:
                await transport.upload(relay_server.code, TransferFile.from_bytes('a.txt', b'y' * 4000))

        assert exc_info.value.failed == 1
        assert exc_info.value.total == 4
        assert sorted(relay_server.uploaded) == [0, 2000, 3000]
        assert relay_server.upload_attempts[1000] == 1

    @pytest.mark.asyncio
    async def test_upload_from_disk(self, relay_server, make_api, fast_policy, sample_file):
        async with make_api() as api:
            transport = ChunkTransport(api, chunk_size=8, policy=fast_policy)
            progress = await transport.upload(relay_server.code, TransferFile.from_path(sample_file))

        assert progress.loaded == sample_file.stat().st_size
        assert relay_server.uploaded_bytes() == sample_file.read_bytes()

    @pytest.mark.asyncio
    async def test_empty_file_reports_complete(self, relay_server, make_api, fast_policy):
        reported = []

        async with make_api() as api:
            transport = ChunkTransport(api, policy=fast_policy)
            progress = await transport.upload(
                relay_server.code, TransferFile.from_bytes('empty', b''), on_progress=reported.append
            )

        assert progress.percent == 100
        assert len(reported) == 1
        assert relay_server.uploaded == {}


class TestDownload:

    @pytest.mark.asyncio
    async def test_download_reassembles_in_order(self, relay_server, make_api, fast_policy):
        content = bytes(range(256)) * 40
        relay_server.host('data.bin', content)
        relay_server.download_chunk_size = 1000
        names = []

        async with make_api() as api:
            transport = ChunkTransport(api, chunk_size=1000, download_concurrency=3, policy=fast_policy)
            reassembler = await transport.download(
                relay_server.code, 'rid-1', len(content), on_name=names.append
            )

        assert reassembler.file_name == 'data.bin'
        assert names == ['data.bin']
        assert reassembler.finalize() == content
        assert sorted(relay_server.download_starts) == list(range(0, len(content), 1000))
        assert all(r.url.params['rid'] == 'rid-1' for r in relay_server.requests)

    @pytest.mark.asyncio
    async def test_transient_download_failure_is_retried(self, relay_server, make_api, fast_policy):
        content = b'z' * 3000
        relay_server.host('z.bin', content)
        relay_server.download_chunk_size = 1000
        relay_server.download_script[2000] = [httpx.Response(502)]

        async with make_api() as api:
            transport = ChunkTransport(api, chunk_size=1000, policy=fast_policy)
            reassembler = await transport.download(relay_server.code, 'rid', len(content))

        assert transport.stats.retries == 1
        assert reassembler.finalize() == content

    @pytest.mark.asyncio
    async def test_missing_content_range_fails_transfer(self, relay_server, make_api, fast_policy):
        relay_server.host('z.bin', b'q' * 2000)
        relay_server.download_chunk_size = 1000
        relay_server.download_script[1000] = [httpx.Response(206, content=b'q' * 1000)]

        async with make_api() as api:
            transport = ChunkTransport(api, chunk_size=1000, policy=fast_policy)
            with pytest.raises(AggregateTransferError) as exc_info:
                await transport.download(relay_server.code, 'rid', 2000)

        assert exc_info.value.failed == 1
        assert isinstance(exc_info.value.errors[0], ProtocolError)
        assert relay_server.download_starts.count(1000) == 1
