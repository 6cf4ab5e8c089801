"""Shared fixtures and helpers for the sync engine tests."""

import asyncio
import socket
from pathlib import Path
from typing import Callable, List

import pytest

from peersync.config import Config
from peersync.sync import SyncCoordinator
from peersync.transfer import TransferStatus, StatusSubscription


def get_free_port() -> int:
    """A TCP port nothing is listening on (right now)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0):
    """Poll `predicate` until it holds or `timeout` seconds pass."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


async def collect_until_terminal(subscription: StatusSubscription,
                                 timeout: float = 5.0) -> List[TransferStatus]:
    """Every event up to and including the next Success or Error."""
    events = []

    async def collect():
        while True:
            status = await subscription.get()
            events.append(status)
            if status.is_terminal:
                return events

    return await asyncio.wait_for(collect(), timeout)


def make_config(data_dir: Path, port: int, peer_port: int, **overrides) -> Config:
    config = Config(
        host='127.0.0.1',
        transfer_port=port,
        peer_port=peer_port,
        data_dir=data_dir,
        retry_backoff=0.0,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


@pytest.fixture
def free_port() -> int:
    return get_free_port()


@pytest.fixture
async def peers(tmp_path):
    """Two coordinators wired to each other over loopback."""
    port_a = get_free_port()
    port_b = get_free_port()

    a = SyncCoordinator(make_config(tmp_path / 'a', port_a, port_b))
    b = SyncCoordinator(make_config(tmp_path / 'b', port_b, port_a))

    await a.on_connection_established('127.0.0.1')
    await b.on_connection_established('127.0.0.1')

    yield a, b

    await a.on_connection_terminated()
    await b.on_connection_terminated()
