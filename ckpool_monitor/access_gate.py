"""
API access gate.

Two layers guard the aggregation endpoints:

1. A fixed-window rate limiter keyed by client address. Applies to every
   path, the health check included.
2. A protection check that only lets our own front end through: it must send
   the pool marker header, the per-process shared token, and (when present)
   an Origin/Referer pointing at the serving host or a loopback address.
   The health check skips this layer so orchestration can poll it.
"""

import logging
import secrets
import threading
import time
from typing import Dict, Mapping, Optional
from urllib.parse import urlsplit

from aiohttp import web

from .config import (
    API_TOKEN,
    HEALTH_PATH,
    POOL_REQUEST_HEADER,
    POOL_REQUEST_MARKER,
    POOL_TOKEN_HEADER,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SECONDS,
)
from .errors import RateLimitedError, UnauthorizedError

log = logging.getLogger("CKPoolMonitor.AccessGate")

LOOPBACK_HOSTS = frozenset({'localhost', '127.0.0.1', '::1'})


def generate_api_token() -> str:
    """The shared secret handed to the front end, fixed for the process lifetime."""
    return API_TOKEN or secrets.token_hex(32)


class RateLimiter:
    """Fixed-window request counter per client key."""

    def __init__(self, window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
                 max_requests: int = RATE_LIMIT_MAX_REQUESTS, clock=time.monotonic):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.clock = clock
        self._windows: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def allow(self, client_key: str) -> bool:
        """Count one request; False once the client is over budget for this window."""
        now = self.clock()
        with self._lock:
            window = self._windows.get(client_key)
            if window is None or now - window['start'] > self.window_seconds:
                window = {'start': now, 'count': 0}
                self._windows[client_key] = window
            window['count'] += 1
            return window['count'] <= self.max_requests

    def check(self, client_key: str) -> None:
        """Like allow(), but raises RateLimitedError when the budget is spent."""
        if not self.allow(client_key):
            raise RateLimitedError('Too many requests. Please slow down.')

    def cleanup(self) -> int:
        """Drop windows that ended more than a full window ago."""
        now = self.clock()
        with self._lock:
            stale = [key for key, window in self._windows.items()
                     if now - window['start'] > self.window_seconds * 2]
            for key in stale:
                del self._windows[key]
        if stale:
            log.debug(f"Rate limiter cleaned up {len(stale)} stale client windows")
        return len(stale)

    def __len__(self):
        return len(self._windows)


def is_trusted_origin(value: Optional[str], host: str) -> bool:
    """
    An Origin/Referer value is trusted when absent, when it points at the
    serving host (including port), or when it points at a loopback address.
    """
    if not value:
        return True
    try:
        parsed = urlsplit(value)
    except ValueError:
        return False
    if not parsed.netloc:
        return False
    if host and parsed.netloc.lower() == host.lower():
        return True
    return (parsed.hostname or '') in LOOPBACK_HOSTS


class ApiGate:
    """Shared-secret and same-origin check for the aggregation API."""

    def __init__(self, token: str, exempt_paths=(HEALTH_PATH,)):
        self.token = token
        self.exempt_paths = frozenset(exempt_paths)

    def authenticate(self, path: str, headers: Mapping[str, str], host: str = '') -> None:
        """Raise UnauthorizedError unless the request may reach the API."""
        if path in self.exempt_paths:
            return

        if headers.get(POOL_REQUEST_HEADER) != POOL_REQUEST_MARKER:
            raise UnauthorizedError('Direct API access not allowed')

        token = headers.get(POOL_TOKEN_HEADER) or ''
        if not secrets.compare_digest(token.encode('utf-8'), self.token.encode('utf-8')):
            raise UnauthorizedError('Invalid or missing API token')

        for header in ('Origin', 'Referer'):
            if not is_trusted_origin(headers.get(header), host):
                raise UnauthorizedError('Cross-origin requests not allowed')


def client_key(request: web.Request) -> str:
    return request.remote or 'unknown'


@web.middleware
async def rate_limit_middleware(request, handler):
    limiter: RateLimiter = request.app['rate_limiter']
    key = client_key(request)
    try:
        limiter.check(key)
    except RateLimitedError as e:
        log.warning(f"Rate limit exceeded for {key} on {request.path}")
        return web.json_response({'success': False, 'error': str(e)}, status=429)
    return await handler(request)


@web.middleware
async def api_protection_middleware(request, handler):
    gate: ApiGate = request.app['api_gate']
    try:
        gate.authenticate(request.path, request.headers, request.host)
    except UnauthorizedError as e:
        log.info(f"Rejected {request.method} {request.path} from {client_key(request)}: {e}")
        return web.json_response({'success': False, 'error': str(e)}, status=403)
    return await handler(request)
