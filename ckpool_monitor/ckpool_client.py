"""
ckpool Socket Client

This module talks to a running ckpool daemon over its local unix sockets.
Every request opens a fresh connection, writes one length-prefixed command
and reads one length-prefixed reply.

Frame layout (both directions):
    4 bytes  unsigned 32-bit little-endian payload length
    N bytes  UTF-8 payload

Two sockets are used:
    listener    read-only aggregate stats (stratifierstats, connectorstats)
    stratifier  parameterised queries (poolstats, getuser, ucinfo, ...)
"""

import asyncio
import json
import logging
import os
import struct
import time
from typing import Any, Dict, Optional

from .config import (
    CKPOOL_SOCKET_DIR,
    LISTENER_SOCKET_NAME,
    STRATIFIER_SOCKET_NAME,
    SOCKET_TIMEOUT_SECONDS,
)
from .errors import (
    CKPoolError,
    CKPoolConnectionError,
    CKPoolNotFoundError,
    CKPoolParseError,
    CKPoolTimeoutError,
)

log = logging.getLogger("CKPoolMonitor.Client")

LENGTH_PREFIX = struct.Struct('<I')
READ_CHUNK_SIZE = 65536


def encode_frame(message: str) -> bytes:
    """Prefix a UTF-8 encoded message with its little-endian length."""
    payload = message.encode('utf-8')
    return LENGTH_PREFIX.pack(len(payload)) + payload


def decode_payload(data: bytes) -> Any:
    """Decode a reply payload as JSON, falling back to the raw text."""
    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError as e:
        raise CKPoolParseError(f"Reply is not valid UTF-8: {e}") from e
    try:
        return json.loads(text)
    except ValueError:
        return text


def build_command(name: str, **params) -> str:
    """
    Build a ckpool API command.

    Parameterised commands are the verb, a dot, and a single-line JSON object,
    e.g. ``getuser.{"user":"bc1q..."}``.
    """
    if not params:
        return name
    return f"{name}.{json.dumps(params, separators=(',', ':'))}"


async def read_frame(reader: asyncio.StreamReader, idle_timeout: Optional[float] = None,
                     first_byte_timeout: Optional[float] = None) -> Any:
    """
    Read a single length-prefixed reply from the stream.

    The length prefix is consumed once, as soon as four bytes are buffered.
    Anything after the declared payload length is ignored. If the peer closes
    the connection early, whatever was received is decoded best effort.

    first_byte_timeout bounds the wait for the first data, idle_timeout each
    wait after that, so a slow reply that keeps streaming is never cut off.
    Expiry raises asyncio.TimeoutError.
    """
    buffer = bytearray()
    expected_length: Optional[int] = None
    received = 0

    while True:
        if expected_length is None and len(buffer) >= LENGTH_PREFIX.size:
            expected_length = LENGTH_PREFIX.unpack_from(buffer)[0]
            del buffer[:LENGTH_PREFIX.size]

        if expected_length is not None and len(buffer) >= expected_length:
            return decode_payload(bytes(buffer[:expected_length]))

        try:
            timeout = first_byte_timeout if received == 0 and first_byte_timeout is not None else idle_timeout
            chunk = await asyncio.wait_for(reader.read(READ_CHUNK_SIZE), timeout=timeout)
        except asyncio.TimeoutError:
            raise
        except OSError as e:
            raise CKPoolConnectionError(f"Connection lost while reading reply: {e}") from e
        if not chunk:
            break
        received += len(chunk)
        buffer.extend(chunk)

    if buffer:
        log.debug(f"Connection closed mid-frame, decoding {len(buffer)} buffered bytes")
        return decode_payload(bytes(buffer))
    raise CKPoolConnectionError("Connection closed without response")


class CKPoolClient:
    """
    Client for the ckpool daemon's command sockets.

    No connection is kept open between calls, so one failing command can
    never poison another.
    """

    def __init__(self, socket_dir: str = CKPOOL_SOCKET_DIR, timeout: float = SOCKET_TIMEOUT_SECONDS):
        self.socket_dir = socket_dir
        self.timeout = timeout
        self.listener_socket = os.path.join(socket_dir, LISTENER_SOCKET_NAME)
        self.stratifier_socket = os.path.join(socket_dir, STRATIFIER_SOCKET_NAME)
        log.info(
            f"ckpool client initialized with sockets: listener={self.listener_socket}, "
            f"stratifier={self.stratifier_socket}"
        )

    async def send_command(self, command: str, socket_path: Optional[str] = None) -> Any:
        """
        Send one command and return the decoded reply.

        One timeout window runs from connect to the first reply byte; after
        that it bounds each wait for more data, so a reply that keeps
        streaming is read to the end.

        Raises:
            CKPoolNotFoundError: the socket path does not exist
            CKPoolTimeoutError: connect, send or a read stalled past the timeout
            CKPoolConnectionError: the socket refused us, failed, or closed empty-handed
            CKPoolParseError: the reply could not be decoded
        """
        socket_path = socket_path or self.listener_socket
        if not os.path.exists(socket_path):
            raise CKPoolNotFoundError(f"Socket not found: {socket_path}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_unix_connection(socket_path),
                                                    timeout=self.timeout)
        except asyncio.TimeoutError:
            raise self._timeout_error(command, socket_path) from None
        except FileNotFoundError as e:
            raise CKPoolNotFoundError(f"Socket not found: {socket_path}") from e
        except OSError as e:
            raise CKPoolConnectionError(f"Socket error on {socket_path}: {e}") from e

        try:
            writer.write(encode_frame(command))
            await asyncio.wait_for(writer.drain(), timeout=max(0, deadline - loop.time()))
            return await read_frame(reader, idle_timeout=self.timeout,
                                    first_byte_timeout=max(0, deadline - loop.time()))
        except asyncio.TimeoutError:
            raise self._timeout_error(command, socket_path) from None
        except OSError as e:
            raise CKPoolConnectionError(f"Socket error on {socket_path}: {e}") from e
        finally:
            writer.close()

    def _timeout_error(self, command: str, socket_path: str) -> CKPoolTimeoutError:
        return CKPoolTimeoutError(
            f"No reply to '{command.split('.', 1)[0]}' within {self.timeout}s on {socket_path}"
        )

    async def _query(self, command: str, socket_path: str) -> Optional[Any]:
        """Send a command, degrading any protocol failure to None."""
        try:
            return await self.send_command(command, socket_path)
        except CKPoolError as e:
            log.warning(f"Command '{command}' failed: {type(e).__name__}: {e}")
            return None

    async def get_pool_stats(self) -> Dict[str, Any]:
        """
        Fetch poolstats, stratifierstats and connectorstats concurrently.

        Each of the three replies degrades to None on failure; the others are
        still returned.
        """
        commands = (
            ('poolstats', self.stratifier_socket),
            ('stratifierstats', self.listener_socket),
            ('connectorstats', self.listener_socket),
        )
        results = await asyncio.gather(
            *(self.send_command(command, path) for command, path in commands),
            return_exceptions=True,
        )

        replies = []
        for (command, _), result in zip(commands, results):
            if isinstance(result, CKPoolError):
                log.warning(f"Command '{command}' failed: {type(result).__name__}: {result}")
                replies.append(None)
            elif isinstance(result, BaseException):
                raise result
            else:
                replies.append(result)

        poolstats, stratifier, connector = replies
        return {
            'poolstats': poolstats,
            'stratifier': stratifier,
            'connector': connector,
            'timestamp': time.time(),
        }

    async def get_user_stats(self, btc_address: str) -> Optional[Any]:
        return await self._query(build_command('getuser', user=btc_address), self.stratifier_socket)

    async def get_worker_stats(self, btc_address: str, worker_name: Optional[str] = None) -> Optional[Any]:
        identity = f"{btc_address}.{worker_name}" if worker_name else btc_address
        return await self._query(build_command('getworker', worker=identity), self.stratifier_socket)

    async def get_all_users(self) -> Optional[Any]:
        return await self._query('users', self.stratifier_socket)

    async def get_all_workers(self) -> Optional[Any]:
        return await self._query('workers', self.stratifier_socket)

    async def get_all_clients(self) -> Optional[Any]:
        """All connected clients, including their user agents."""
        return await self._query('clients', self.stratifier_socket)

    async def get_user_clients(self, btc_address: str) -> Optional[Any]:
        return await self._query(build_command('ucinfo', user=btc_address), self.stratifier_socket)

    async def get_worker_clients(self, worker_identity: str) -> Optional[Any]:
        return await self._query(build_command('wcinfo', worker=worker_identity), self.stratifier_socket)

    async def get_stratifier_stats(self) -> Optional[Any]:
        return await self._query('stratifierstats', self.listener_socket)

    async def get_connector_stats(self) -> Optional[Any]:
        return await self._query('connectorstats', self.listener_socket)

    def get_socket_status(self) -> Dict[str, bool]:
        """Whether each daemon socket currently exists on disk."""
        return {
            LISTENER_SOCKET_NAME: os.path.exists(self.listener_socket),
            STRATIFIER_SOCKET_NAME: os.path.exists(self.stratifier_socket),
        }
