"""Tests for the command-line interface."""

import asyncio
import threading
import time

import pytest
from click.testing import CliRunner

from peersync.cli import cli, format_size
from peersync.transfer import AddOperation, StatusPublisher, TransferServer

from conftest import get_free_port


@pytest.fixture
def threaded_server():
    """A TransferServer running on its own loop in a background thread."""
    received = {}
    ready = threading.Event()
    loop = asyncio.new_event_loop()
    holder = {}

    async def handle(operation):
        if isinstance(operation, AddOperation):
            received[operation.name] = operation.content_path.read_bytes()
        else:
            received[operation.name] = None

    async def start():
        server = TransferServer(StatusPublisher(), host='127.0.0.1', port=0)
        await server.start(handle)
        holder['server'] = server

    def run():
        asyncio.set_event_loop(loop)
        loop.run_until_complete(start())
        ready.set()
        loop.run_forever()

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    assert ready.wait(5.0)

    yield holder['server'].bound_port, received

    asyncio.run_coroutine_threadsafe(holder['server'].stop(), loop).result(5.0)
    loop.call_soon_threadsafe(loop.stop)
    thread.join(5.0)
    loop.close()


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "Condition not met before timeout"
        time.sleep(0.01)


def test_push_sends_files(threaded_server, tmp_path):
    port, received = threaded_server
    first = tmp_path / 'one.txt'
    second = tmp_path / 'two.bin'
    first.write_bytes(b'one')
    second.write_bytes(b'\x00' * 5000)

    result = CliRunner().invoke(cli, [
        '--peer-port', str(port), 'push', str(first), str(second), '--peer', '127.0.0.1',
    ])

    assert result.exit_code == 0, result.output
    wait_for(lambda: len(received) == 2)
    assert received['one.txt'] == b'one'
    assert received['two.bin'] == b'\x00' * 5000


def test_delete_sends_frame(threaded_server):
    port, received = threaded_server

    result = CliRunner().invoke(cli, [
        '--peer-port', str(port), 'delete', 'old.txt', '--peer', '127.0.0.1',
    ])

    assert result.exit_code == 0, result.output
    wait_for(lambda: 'old.txt' in received)
    assert received['old.txt'] is None


def test_push_to_unreachable_peer_fails(tmp_path):
    note = tmp_path / 'note.txt'
    note.write_text('hi')

    result = CliRunner().invoke(
        cli,
        ['--peer-port', str(get_free_port()), 'push', str(note), '--peer', '127.0.0.1'],
        env={'PEERSYNC_RETRY_BACKOFF': '0'},
    )

    assert result.exit_code == 1


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(4096) == "4.0 KB"
