"""Tests for SyncCoordinator: lifecycle, sync, retry."""

import asyncio
import os
import time

import pytest

from peersync.errors import FilesystemError, NetworkError
from peersync.sync import SyncCoordinator, send_with_retry
from peersync.transfer import StatusKind
from peersync.transfer.protocol import encode_add_header

from conftest import collect_until_terminal, get_free_port, make_config, wait_until


def names_and_sizes(coordinator):
    return [(r.name, r.size) for r in coordinator.files]


class TestLifecycle:

    async def test_stale_files_cleared_then_folder_removed(self, tmp_path, free_port):
        coordinator = SyncCoordinator(make_config(tmp_path, free_port, get_free_port()))
        coordinator.folder.mkdir(parents=True)
        (coordinator.folder / 'stale.txt').write_text('left over')

        await coordinator.on_connection_established('10.0.0.5')
        assert coordinator.is_connected
        assert coordinator.peer_address == '10.0.0.5'
        assert coordinator.files == []
        assert coordinator.list_files() == []

        await coordinator.on_connection_terminated()
        assert not coordinator.is_connected
        assert coordinator.files == []
        assert not coordinator.folder.exists()

    async def test_reconnect_replaces_session(self, tmp_path, free_port):
        coordinator = SyncCoordinator(make_config(tmp_path, free_port, get_free_port()))

        first = await coordinator.on_connection_established('10.0.0.5')
        first_server = coordinator.server
        second = await coordinator.on_connection_established('10.0.0.6')

        assert not first.is_connected
        assert not first_server.is_running
        assert second.is_connected
        assert coordinator.server.is_running
        assert coordinator.peer_address == '10.0.0.6'

        await coordinator.on_connection_terminated()

    async def test_add_from_previous_session_does_not_leak(self, tmp_path, free_port):
        coordinator = SyncCoordinator(make_config(tmp_path, free_port, get_free_port()))
        await coordinator.on_connection_established('10.0.0.5')
        first_server = coordinator.server

        _, writer = await asyncio.open_connection('127.0.0.1', free_port)
        writer.write(encode_add_header('stale.bin', 10) + b'x' * 5)
        await writer.drain()
        await wait_until(lambda: first_server.bytes_received == 5)

        await coordinator.on_connection_terminated()
        await coordinator.on_connection_established('10.0.0.5')
        assert coordinator.list_files() == []

        events = coordinator.status.subscribe()
        writer.write(b'y' * 5)
        await writer.drain()
        writer.close()
        received = await collect_until_terminal(events)

        assert received[-1].kind is StatusKind.ERROR
        assert 'closed' in received[-1].message
        assert coordinator.list_files() == []
        assert list(coordinator.folder.iterdir()) == []

        await coordinator.on_connection_terminated()

    async def test_terminate_without_session_is_noop(self, tmp_path):
        coordinator = SyncCoordinator(make_config(tmp_path, 0, 0))
        await coordinator.on_connection_terminated()
        assert not coordinator.is_connected

    async def test_listing_callbacks(self, tmp_path, free_port):
        coordinator = SyncCoordinator(make_config(tmp_path, free_port, get_free_port()))
        updates = []
        coordinator.on_files_changed(updates.append)

        await coordinator.on_connection_established('10.0.0.5')
        await coordinator.on_connection_terminated()

        assert updates == [[], []]

    async def test_terminate_resets_status(self, tmp_path, free_port):
        coordinator = SyncCoordinator(make_config(tmp_path, free_port, get_free_port()))
        await coordinator.on_connection_established('10.0.0.5')
        await coordinator.on_connection_terminated()

        assert coordinator.status.current.kind is StatusKind.IDLE


@pytest.mark.integration
class TestSync:

    async def test_note_txt_example(self, peers, tmp_path):
        a, b = peers
        note = tmp_path / 'note.txt'
        content = os.urandom(4096)
        note.write_bytes(content)

        events = a.status.subscribe()
        assert await a.sync_file(note, '127.0.0.1') is True
        sent = await collect_until_terminal(events)

        progress = [e.progress for e in sent if e.kind is StatusKind.SENDING]
        assert progress[-1] == 100
        assert progress == sorted(progress)
        assert sent[-1].kind is StatusKind.SUCCESS
        assert names_and_sizes(a) == [('note.txt', 4096)]

        await wait_until(lambda: names_and_sizes(b) == [('note.txt', 4096)])
        assert (b.folder / 'note.txt').read_bytes() == content

    async def test_overwrite_keeps_single_entry(self, peers, tmp_path):
        a, b = peers
        note = tmp_path / 'note.txt'

        note.write_bytes(b'x' * 1000)
        await a.sync_file(note)
        await wait_until(lambda: names_and_sizes(b) == [('note.txt', 1000)])

        note.write_bytes(b'y' * 10)
        await a.sync_file(note)
        await wait_until(lambda: names_and_sizes(b) == [('note.txt', 10)])

        assert (b.folder / 'note.txt').read_bytes() == b'y' * 10

    async def test_delete_of_absent_file_is_noop(self, peers, tmp_path):
        a, b = peers
        keep = tmp_path / 'keep.txt'
        keep.write_bytes(b'keep')
        await a.sync_file(keep)
        await wait_until(lambda: len(b.files) == 1)

        events = b.status.subscribe()
        assert await a.remove_file('absent.txt') is True
        received = await collect_until_terminal(events)

        assert received[-1].kind is StatusKind.SUCCESS
        assert names_and_sizes(b) == [('keep.txt', 4)]

    async def test_delete_propagates(self, peers, tmp_path):
        a, b = peers
        doomed = tmp_path / 'doomed.txt'
        doomed.write_bytes(b'bye')
        await a.sync_file(doomed)
        await wait_until(lambda: len(b.files) == 1)

        await a.remove_file('doomed.txt')

        assert a.files == []
        await wait_until(lambda: b.files == [])
        assert not (b.folder / 'doomed.txt').exists()

    async def test_both_directions(self, peers, tmp_path):
        a, b = peers
        from_a = tmp_path / 'from_a.txt'
        from_b = tmp_path / 'from_b.txt'
        from_a.write_bytes(b'a')
        from_b.write_bytes(b'bb')

        await a.sync_file(from_a)
        await b.sync_file(from_b)

        expected = [('from_a.txt', 1), ('from_b.txt', 2)]
        await wait_until(lambda: names_and_sizes(a) == expected)
        await wait_until(lambda: names_and_sizes(b) == expected)

    async def test_sync_files_report(self, peers, tmp_path):
        a, b = peers
        good = tmp_path / 'good.txt'
        good.write_bytes(b'ok')

        report = await a.sync_files([good, tmp_path / 'missing.txt'])

        assert report.synced == ['good.txt']
        assert list(report.failed) == ['missing.txt']
        assert report.has_errors

    async def test_skip_unchanged(self, peers, tmp_path):
        a, _ = peers
        note = tmp_path / 'note.txt'
        note.write_bytes(b'same')

        assert await a.sync_file(note, skip_unchanged=True) is True
        assert await a.sync_file(note, skip_unchanged=True) is False

        report = await a.sync_files([note], skip_unchanged=True)
        assert report.skipped == ['note.txt']
        assert not report.has_errors


class TestRetry:

    async def test_not_connected_is_noop(self, tmp_path):
        coordinator = SyncCoordinator(make_config(tmp_path, 0, 0))
        note = tmp_path / 'note.txt'
        note.write_bytes(b'x')

        assert await coordinator.sync_file(note, '10.0.0.5') is False
        assert await coordinator.remove_file('note.txt') is False

    async def test_three_attempts_then_last_error(self, tmp_path, free_port, monkeypatch):
        coordinator = SyncCoordinator(make_config(tmp_path, free_port, get_free_port()))
        await coordinator.on_connection_established('127.0.0.1')
        note = tmp_path / 'note.txt'
        note.write_bytes(b'x' * 100)

        attempts = []
        original = coordinator.client.send_file

        async def counting_send(*args, **kwargs):
            attempts.append(args)
            return await original(*args, **kwargs)

        monkeypatch.setattr(coordinator.client, 'send_file', counting_send)

        try:
            with pytest.raises(NetworkError):
                await coordinator.sync_file(note)
        finally:
            await coordinator.on_connection_terminated()

        assert len(attempts) == 3

    @pytest.mark.slow
    async def test_backoff_timing(self, tmp_path, free_port):
        config = make_config(tmp_path, free_port, get_free_port(), retry_backoff=1.0)
        coordinator = SyncCoordinator(config)
        await coordinator.on_connection_established('127.0.0.1')
        note = tmp_path / 'note.txt'
        note.write_bytes(b'x')

        started = time.monotonic()
        try:
            with pytest.raises(NetworkError):
                await coordinator.sync_file(note)
        finally:
            await coordinator.on_connection_terminated()
        elapsed = time.monotonic() - started

        assert 2.9 <= elapsed < 15.0

    async def test_succeeds_on_later_attempt(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise NetworkError("connection refused")
            return 'done'

        result = await send_with_retry(flaky, 'flaky send', max_attempts=3, backoff=0)

        assert result == 'done'
        assert len(calls) == 3

    async def test_last_error_is_raised(self):
        errors = [NetworkError("first"), FilesystemError("second"), NetworkError("third")]

        async def failing():
            raise errors.pop(0)

        with pytest.raises(NetworkError, match="third"):
            await send_with_retry(failing, 'failing send', max_attempts=3, backoff=0)
