"""
Unit tests for ckpool_client.py

Covers frame encoding, reassembly of split replies, best-effort decoding of
truncated replies, and the typed failures surfaced by send_command.
"""

import asyncio
import json
import os
import struct
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ckpool_monitor.ckpool_client import (
    CKPoolClient,
    build_command,
    decode_payload,
    encode_frame,
    read_frame,
)
from ckpool_monitor.errors import (
    CKPoolConnectionError,
    CKPoolError,
    CKPoolNotFoundError,
    CKPoolParseError,
    CKPoolTimeoutError,
)

from conftest import BTC_ADDRESS, CLOSE, HANG, Chunks


def _reader_with(*pieces, eof=True):
    reader = asyncio.StreamReader()
    for piece in pieces:
        reader.feed_data(piece)
    if eof:
        reader.feed_eof()
    return reader


class TestFraming:
    def test_encode_frame_uses_little_endian_length(self):
        frame = encode_frame("poolstats")
        assert frame[:4] == struct.pack("<I", 9)
        assert frame[4:] == b"poolstats"

    def test_encode_frame_counts_utf8_bytes(self):
        frame = encode_frame("café")
        assert struct.unpack("<I", frame[:4])[0] == 5

    def test_build_command_without_params(self):
        assert build_command("poolstats") == "poolstats"

    def test_build_command_with_params_is_single_line_json(self):
        command = build_command("getuser", user=BTC_ADDRESS)
        assert command == f'getuser.{{"user":"{BTC_ADDRESS}"}}'
        assert "\n" not in command

    def test_decode_payload_json(self):
        assert decode_payload(b'{"users": 3}') == {"users": 3}

    def test_decode_payload_falls_back_to_text(self):
        assert decode_payload(b"unknown") == "unknown"

    def test_decode_payload_rejects_invalid_utf8(self):
        with pytest.raises(CKPoolParseError):
            decode_payload(b"\xff\xfe")


class TestReadFrame:
    @pytest.mark.asyncio
    async def test_complete_frame(self):
        reader = _reader_with(encode_frame('{"dsps1": 2.5}'))
        assert await read_frame(reader) == {"dsps1": 2.5}

    @pytest.mark.asyncio
    async def test_frame_split_at_every_byte(self):
        """The prefix and payload may arrive in arbitrary pieces."""
        frame = encode_frame(json.dumps({"workers": [1, 2, 3]}))
        reader = asyncio.StreamReader()

        async def feed():
            for i in range(len(frame)):
                reader.feed_data(frame[i:i + 1])
                await asyncio.sleep(0)
            reader.feed_eof()

        feeder = asyncio.create_task(feed())
        assert await read_frame(reader) == {"workers": [1, 2, 3]}
        await feeder

    @pytest.mark.asyncio
    async def test_bytes_after_declared_length_are_ignored(self):
        reader = _reader_with(encode_frame('{"a": 1}') + b"trailing garbage")
        assert await read_frame(reader) == {"a": 1}

    @pytest.mark.asyncio
    async def test_returns_without_waiting_for_eof(self):
        reader = _reader_with(encode_frame('"ok"'), eof=False)
        assert await asyncio.wait_for(read_frame(reader), timeout=1) == "ok"

    @pytest.mark.asyncio
    async def test_truncated_frame_decodes_best_effort(self):
        reader = _reader_with(struct.pack("<I", 64) + b'{"x": 1}')
        assert await read_frame(reader) == {"x": 1}

    @pytest.mark.asyncio
    async def test_unframed_short_reply_returned_as_text(self):
        reader = _reader_with(b"ok")
        assert await read_frame(reader) == "ok"

    @pytest.mark.asyncio
    async def test_close_without_data_is_connection_error(self):
        reader = _reader_with()
        with pytest.raises(CKPoolConnectionError):
            await read_frame(reader)

    @pytest.mark.asyncio
    async def test_invalid_utf8_payload_is_parse_error(self):
        reader = _reader_with(struct.pack("<I", 2) + b"\xff\xfe")
        with pytest.raises(CKPoolParseError):
            await read_frame(reader)

    @pytest.mark.asyncio
    async def test_idle_timeout_expires_when_nothing_arrives(self):
        reader = _reader_with(eof=False)
        with pytest.raises(asyncio.TimeoutError):
            await read_frame(reader, idle_timeout=0.05)

    @pytest.mark.asyncio
    async def test_first_byte_timeout_applies_before_any_data(self):
        reader = _reader_with(eof=False)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(read_frame(reader, idle_timeout=10, first_byte_timeout=0.05), timeout=2)

    @pytest.mark.asyncio
    async def test_idle_timeout_restarts_with_every_chunk(self):
        frame = encode_frame(json.dumps({"workers": list(range(20))}))
        reader = asyncio.StreamReader()

        async def feed():
            for i in range(0, len(frame), 8):
                await asyncio.sleep(0.03)
                reader.feed_data(frame[i:i + 8])

        feeder = asyncio.create_task(feed())
        # Total delivery time is well past the idle timeout; no single gap is.
        assert await read_frame(reader, idle_timeout=0.2) == {"workers": list(range(20))}
        await feeder

    @pytest.mark.asyncio
    async def test_socket_error_while_reading_is_connection_error(self):
        reader = MagicMock()
        reader.read = AsyncMock(side_effect=ConnectionAbortedError("aborted"))
        with pytest.raises(CKPoolConnectionError):
            await read_frame(reader)


class TestCKPoolClient:
    def test_socket_paths(self, socket_dir):
        client = CKPoolClient(socket_dir)
        assert client.listener_socket == os.path.join(socket_dir, "listener")
        assert client.stratifier_socket == os.path.join(socket_dir, "stratifier")

    @pytest.mark.asyncio
    async def test_send_command_roundtrip(self, fake_daemon, ckpool_client):
        fake_daemon.responses["poolstats"] = {"dsps1": 2.5}
        result = await ckpool_client.send_command("poolstats", ckpool_client.stratifier_socket)
        assert result == {"dsps1": 2.5}
        assert fake_daemon.received == [("stratifier", "poolstats")]

    @pytest.mark.asyncio
    async def test_send_command_defaults_to_listener(self, fake_daemon, ckpool_client):
        fake_daemon.responses["stratifierstats"] = {"users": {"count": 1}}
        await ckpool_client.send_command("stratifierstats")
        assert fake_daemon.received == [("listener", "stratifierstats")]

    @pytest.mark.asyncio
    async def test_reply_delivered_in_chunks(self, fake_daemon, ckpool_client):
        frame = encode_frame('{"users": 7}')
        fake_daemon.responses["poolstats"] = Chunks((frame[:2], frame[2:6], frame[6:]))
        result = await ckpool_client.send_command("poolstats", ckpool_client.stratifier_socket)
        assert result == {"users": 7}

    @pytest.mark.asyncio
    async def test_text_reply(self, fake_daemon, ckpool_client):
        fake_daemon.responses["getuser"] = "unknown"
        result = await ckpool_client.send_command(build_command("getuser", user="x"),
                                                  ckpool_client.stratifier_socket)
        assert result == "unknown"

    @pytest.mark.asyncio
    async def test_missing_socket_is_not_found(self, socket_dir):
        client = CKPoolClient(socket_dir, timeout=1.0)
        with pytest.raises(CKPoolNotFoundError):
            await client.send_command("poolstats", client.stratifier_socket)

    @pytest.mark.asyncio
    async def test_non_socket_path_is_connection_error(self, socket_dir):
        client = CKPoolClient(socket_dir, timeout=1.0)
        with open(client.listener_socket, "w") as f:
            f.write("not a socket")
        with pytest.raises(CKPoolConnectionError):
            await client.send_command("stratifierstats")

    @pytest.mark.asyncio
    async def test_timeout(self, fake_daemon, socket_dir):
        fake_daemon.responses["poolstats"] = HANG
        client = CKPoolClient(socket_dir, timeout=0.2)
        with pytest.raises(CKPoolTimeoutError):
            await client.send_command("poolstats", client.stratifier_socket)

    @pytest.mark.asyncio
    async def test_slow_streaming_reply_is_not_cut_off(self, fake_daemon, socket_dir):
        frame = encode_frame(json.dumps({"users": 7, "workers": list(range(30))}))
        fake_daemon.responses["poolstats"] = Chunks(frame[i:i + 10] for i in range(0, len(frame), 10))
        fake_daemon.chunk_delay = 0.05
        client = CKPoolClient(socket_dir, timeout=0.3)

        started = asyncio.get_running_loop().time()
        result = await client.send_command("poolstats", client.stratifier_socket)

        assert result == {"users": 7, "workers": list(range(30))}
        assert asyncio.get_running_loop().time() - started > client.timeout

    @pytest.mark.asyncio
    async def test_reply_stalled_midway_times_out(self, fake_daemon, socket_dir):
        frame = encode_frame('{"users": 7}')
        fake_daemon.responses["poolstats"] = Chunks((frame[:6], frame[6:]))
        fake_daemon.chunk_delay = 0.6
        client = CKPoolClient(socket_dir, timeout=0.2)
        with pytest.raises(CKPoolTimeoutError):
            await client.send_command("poolstats", client.stratifier_socket)

    @pytest.mark.asyncio
    async def test_connect_os_error_is_connection_error(self, fake_daemon, ckpool_client):
        with patch("asyncio.open_unix_connection", AsyncMock(side_effect=PermissionError("denied"))):
            with pytest.raises(CKPoolConnectionError):
                await ckpool_client.send_command("poolstats", ckpool_client.stratifier_socket)

    @pytest.mark.asyncio
    async def test_socket_error_mid_exchange_is_connection_error(self, fake_daemon, ckpool_client):
        reader = MagicMock()
        reader.read = AsyncMock(side_effect=ConnectionAbortedError("aborted"))
        writer = MagicMock()
        writer.drain = AsyncMock()
        with patch("asyncio.open_unix_connection", AsyncMock(return_value=(reader, writer))):
            with pytest.raises(CKPoolConnectionError):
                await ckpool_client.send_command("poolstats", ckpool_client.stratifier_socket)
        writer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_without_reply(self, fake_daemon, ckpool_client):
        fake_daemon.responses["poolstats"] = CLOSE
        with pytest.raises(CKPoolConnectionError):
            await ckpool_client.send_command("poolstats", ckpool_client.stratifier_socket)

    @pytest.mark.asyncio
    async def test_unframed_reply_then_close(self, fake_daemon, ckpool_client):
        fake_daemon.responses["poolstats"] = b'{"users": 2}'
        # Four bytes of JSON are read as a (huge) length prefix; the rest is decoded as-is.
        result = await ckpool_client.send_command("poolstats", ckpool_client.stratifier_socket)
        assert result == 'ers": 2}'

    @pytest.mark.asyncio
    async def test_typed_errors_share_a_base(self, socket_dir):
        client = CKPoolClient(socket_dir, timeout=1.0)
        with pytest.raises(CKPoolError):
            await client.send_command("poolstats")


class TestCKPoolClientQueries:
    @pytest.mark.asyncio
    async def test_get_user_stats_sends_getuser(self, fake_daemon, ckpool_client, sample_user):
        fake_daemon.responses["getuser"] = sample_user
        result = await ckpool_client.get_user_stats(BTC_ADDRESS)
        assert result["user"] == BTC_ADDRESS
        assert fake_daemon.received == [("stratifier", f'getuser.{{"user":"{BTC_ADDRESS}"}}')]

    @pytest.mark.asyncio
    async def test_get_worker_stats_joins_identity(self, fake_daemon, ckpool_client):
        fake_daemon.responses["getworker"] = {"dsps1": 0.1}
        await ckpool_client.get_worker_stats(BTC_ADDRESS, "rig.1")
        assert fake_daemon.received == [("stratifier", f'getworker.{{"worker":"{BTC_ADDRESS}.rig.1"}}')]

    @pytest.mark.asyncio
    async def test_get_user_clients_and_worker_clients(self, fake_daemon, ckpool_client):
        fake_daemon.responses["ucinfo"] = {"clients": []}
        fake_daemon.responses["wcinfo"] = {"clients": []}
        assert await ckpool_client.get_user_clients(BTC_ADDRESS) == {"clients": []}
        assert await ckpool_client.get_worker_clients(f"{BTC_ADDRESS}.a") == {"clients": []}
        verbs = [command.split(".", 1)[0] for _, command in fake_daemon.received]
        assert verbs == ["ucinfo", "wcinfo"]

    @pytest.mark.asyncio
    async def test_queries_degrade_to_none(self, fake_daemon, ckpool_client):
        assert await ckpool_client.get_all_workers() is None
        assert await ckpool_client.get_all_clients() is None
        assert await ckpool_client.get_user_stats(BTC_ADDRESS) is None

    @pytest.mark.asyncio
    async def test_listener_queries(self, fake_daemon, ckpool_client):
        fake_daemon.responses["stratifierstats"] = {"users": {"count": 2}}
        fake_daemon.responses["connectorstats"] = {"clients": {"count": 4}}
        assert await ckpool_client.get_stratifier_stats() == {"users": {"count": 2}}
        assert await ckpool_client.get_connector_stats() == {"clients": {"count": 4}}
        assert {socket for socket, _ in fake_daemon.received} == {"listener"}

    @pytest.mark.asyncio
    async def test_get_pool_stats_all_succeed(self, fake_daemon, ckpool_client, sample_poolstats):
        fake_daemon.responses["poolstats"] = sample_poolstats
        fake_daemon.responses["stratifierstats"] = {"users": {"count": 3}}
        fake_daemon.responses["connectorstats"] = {"clients": {"count": 5}}

        result = await ckpool_client.get_pool_stats()

        assert result["poolstats"] == sample_poolstats
        assert result["stratifier"] == {"users": {"count": 3}}
        assert result["connector"] == {"clients": {"count": 5}}
        assert result["timestamp"] > 0
        assert sorted(fake_daemon.received) == [
            ("listener", "connectorstats"),
            ("listener", "stratifierstats"),
            ("stratifier", "poolstats"),
        ]

    @pytest.mark.asyncio
    async def test_get_pool_stats_partial_failure(self, fake_daemon, socket_dir, sample_poolstats):
        fake_daemon.responses["poolstats"] = sample_poolstats
        fake_daemon.responses["stratifierstats"] = HANG
        fake_daemon.responses["connectorstats"] = {"clients": {"count": 5}}
        client = CKPoolClient(socket_dir, timeout=0.3)

        result = await client.get_pool_stats()

        assert result["poolstats"] == sample_poolstats
        assert result["stratifier"] is None
        assert result["connector"] == {"clients": {"count": 5}}

    @pytest.mark.asyncio
    async def test_get_pool_stats_daemon_down(self, socket_dir):
        client = CKPoolClient(socket_dir, timeout=1.0)
        result = await client.get_pool_stats()
        assert result["poolstats"] is None
        assert result["stratifier"] is None
        assert result["connector"] is None

    @pytest.mark.asyncio
    async def test_get_pool_stats_socket_errors_degrade_to_none(self, fake_daemon, ckpool_client):
        with patch("asyncio.open_unix_connection", AsyncMock(side_effect=OSError(111, "refused"))):
            result = await ckpool_client.get_pool_stats()
            assert await ckpool_client.get_all_clients() is None
        assert result["poolstats"] is None
        assert result["stratifier"] is None
        assert result["connector"] is None

    def test_get_socket_status(self, socket_dir):
        client = CKPoolClient(socket_dir)
        open(client.listener_socket, "w").close()
        assert client.get_socket_status() == {"listener": True, "stratifier": False}
