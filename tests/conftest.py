"""
Shared fixtures for ckpool Monitor tests.
"""

import asyncio
import contextlib
import json
import os
import shutil
import struct
import tempfile
from functools import partial

import pytest

from ckpool_monitor.ckpool_client import CKPoolClient, encode_frame
from ckpool_monitor.miner_cache import MinerCache

BTC_ADDRESS = "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh"
OTHER_ADDRESS = "1BoatSLRHtKNngkdXEeobR76b53LETtpyT"

# Reply markers understood by FakeCKPoolDaemon
HANG = object()
CLOSE = object()


class Chunks(tuple):
    """Raw byte chunks written one at a time with a pause in between."""


class FakeCKPoolDaemon:
    """
    Minimal stand-in for ckpool's listener and stratifier sockets.

    Replies are looked up by full command first, then by verb. A reply can be
    a JSON-able object or string (sent as one frame), raw bytes (sent as-is),
    Chunks (sent piecewise), HANG (never answer) or CLOSE (close silently).
    Commands with no configured reply are closed silently.
    """

    def __init__(self, socket_dir):
        self.socket_dir = socket_dir
        self.responses = {}
        self.received = []
        self.chunk_delay = 0.01
        self._servers = []

    async def start(self):
        for name in ("listener", "stratifier"):
            path = os.path.join(self.socket_dir, name)
            server = await asyncio.start_unix_server(partial(self._handle, name), path=path)
            self._servers.append(server)

    async def stop(self):
        for server in self._servers:
            server.close()
            await server.wait_closed()

    async def _handle(self, socket_name, reader, writer):
        try:
            header = await reader.readexactly(4)
            (length,) = struct.unpack("<I", header)
            command = (await reader.readexactly(length)).decode("utf-8")
            self.received.append((socket_name, command))

            reply = self.responses.get(command, self.responses.get(command.split(".", 1)[0], CLOSE))
            if reply is HANG:
                # Hold the connection open until the client gives up.
                await reader.read()
            elif reply is CLOSE:
                pass
            elif isinstance(reply, Chunks):
                for chunk in reply:
                    writer.write(chunk)
                    await writer.drain()
                    await asyncio.sleep(self.chunk_delay)
            elif isinstance(reply, bytes):
                writer.write(reply)
                await writer.drain()
            else:
                text = reply if isinstance(reply, str) else json.dumps(reply)
                writer.write(encode_frame(text))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionResetError, BrokenPipeError, asyncio.CancelledError):
            pass
        finally:
            writer.close()


@pytest.fixture
def socket_dir():
    """Short path for unix sockets (sun_path is limited to ~108 bytes)."""
    path = tempfile.mkdtemp(prefix="ckp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
async def fake_daemon(socket_dir):
    daemon = FakeCKPoolDaemon(socket_dir)
    await daemon.start()
    yield daemon
    with contextlib.suppress(Exception):
        await daemon.stop()


@pytest.fixture
def ckpool_client(socket_dir):
    return CKPoolClient(socket_dir, timeout=1.0)


@pytest.fixture
def logs_dir(tmp_path):
    users = tmp_path / "logs" / "users"
    users.mkdir(parents=True)
    return str(tmp_path / "logs")


@pytest.fixture
def cache_file(tmp_path):
    return str(tmp_path / "data" / "miner-types.json")


@pytest.fixture
def miner_cache(cache_file, logs_dir):
    return MinerCache(cache_file, logs_dir)


def write_worker_file(logs_dir, identity, content):
    path = os.path.join(logs_dir, "users", identity)
    with open(path, "w") as f:
        f.write(content)
    return path


class FakeMempoolClient:
    """Block explorer stand-in with canned replies; None simulates an outage."""

    def __init__(self):
        self.started = False
        self.stopped = False
        self.difficulty_adjustment = {"remainingBlocks": 1000, "progressPercent": 50.4, "difficultyChange": 1.2}
        self.fees = {"fastestFee": 20, "halfHourFee": 15, "hourFee": 10, "economyFee": 5, "minimumFee": 1}
        self.mempool = {"count": 5000, "vsize": 2000000, "total_fee": 12345678}
        self.hashrate = {"currentHashrate": 6.5e20, "currentDifficulty": 9.0e13, "currentHeight": 870000}
        self.blocks = [
            {
                "id": "00000000000000000001abc",
                "height": 870000,
                "timestamp": 1_700_000_000,
                "tx_count": 3000,
                "size": 1500000,
                "weight": 3990000,
                "extras": {"pool": {"name": "Foundry USA", "slug": "foundryusa"}, "reward": 315000000},
            }
        ]
        self.prices = {"USD": 65000, "EUR": 60000, "GBP": 52000}

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def get_difficulty_adjustment(self):
        return self.difficulty_adjustment

    async def get_recommended_fees(self):
        return self.fees

    async def get_mempool(self):
        return self.mempool

    async def get_hashrate(self, period="3d"):
        return self.hashrate

    async def get_recent_blocks(self):
        return self.blocks

    async def get_prices(self):
        return self.prices


@pytest.fixture
def fake_mempool():
    return FakeMempoolClient()


@pytest.fixture
def sample_poolstats():
    return {
        "runtime": 3600,
        "users": 3,
        "workers": 5,
        "idle": 0,
        "disconnected": 1,
        "dsps1": 2.5,
        "dsps5": 2.0,
        "dsps15": 1.8,
        "dsps60": 1.5,
        "dsps360": 1.2,
        "dsps1440": 1.0,
        "dsps10080": 0.9,
        "sps1": 0.3,
        "sps5": 0.25,
        "accepted": 123456,
        "rejected": 42,
        "bestshare": 9876543,
        "bestdiff": 1234,
        "height": 870001,
        "diff": 9.2e13,
        "start": 1_700_000_000,
        "update": 1_700_003_600,
    }


@pytest.fixture
def sample_user():
    return {
        "user": BTC_ADDRESS,
        "id": 7,
        "workers": 2,
        "bestshare": 5000.5,
        "bestever": 80000,
        "dsps1": 0.01,
        "dsps5": 0.012,
        "dsps60": 0.011,
        "dsps1440": 0.009,
        "dsps10080": 0.008,
        "lastshare": 1_700_000_000,
        "shares": 4200,
        "authorised": 1_699_000_000,
        "worker": [
            {"workername": f"{BTC_ADDRESS}.bitaxe1", "dsps1": 0.006, "bestever": 80000},
            {"workername": f"{BTC_ADDRESS}.nerd", "dsps1": 0.004, "bestever": 300},
        ],
    }


@pytest.fixture
def sample_clients():
    return {
        "clients": [
            {
                "id": 1,
                "workername": f"{BTC_ADDRESS}.bitaxe1",
                "useragent": "bitaxe/BM1370/v2.4.0 gamma",
                "diff": 1024,
                "bestdiff": 60000,
                "dsps1": 0.005,
                "idle": False,
            },
            {
                "id": 2,
                "workername": f"{BTC_ADDRESS}.nerd",
                "useragent": "NerdMinerV2/1.6",
                "diff": 0.001,
                "bestdiff": 120,
                "dsps1": 0.004,
                "idle": False,
            },
        ]
    }
