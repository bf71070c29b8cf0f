"""
Block Explorer API Client

Fetches network-wide data the ckpool daemon does not know about: fee
estimates, mempool size, network hashrate, recent blocks and BTC prices.
Works against mempool.space or a self-hosted mempool instance.

Default API endpoint: https://mempool.space/api
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from .config import MEMPOOL_API_URL, MEMPOOL_API_TIMEOUT

log = logging.getLogger("CKPoolMonitor.Mempool")


class MempoolAPIClient:
    """
    Thin wrapper over one shared aiohttp session.

    Every getter returns None when the explorer is unreachable or answers
    with an error, so callers can degrade individual fields.
    """

    def __init__(self, api_url: str = MEMPOOL_API_URL, timeout: int = MEMPOOL_API_TIMEOUT):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(limit=10),
                raise_for_status=False,
            )
        log.info(f"Block explorer client using {self.api_url}")

    async def stop(self):
        if self.session:
            await self.session.close()
            self.session = None
            log.info("Block explorer client session closed")

    async def _get(self, path: str) -> Optional[Any]:
        if self.session is None or self.session.closed:
            await self.start()

        url = f"{self.api_url}{path}"
        try:
            async with self.session.get(url) as resp:
                if resp.status == 200:
                    return await resp.json(content_type=None)
                response_text = await resp.text()
                log.warning(
                    f"Block explorer returned status {resp.status} for {path}. "
                    f"Response preview: {response_text[:200]}"
                )
                return None
        except asyncio.TimeoutError:
            log.warning(f"Block explorer request timeout for {path}")
            return None
        except aiohttp.ClientError as e:
            log.error(f"Block explorer request failed for {path}: {e}")
            return None
        except ValueError as e:
            log.error(f"Block explorer returned invalid JSON for {path}: {e}")
            return None

    async def get_difficulty_adjustment(self) -> Optional[dict]:
        return await self._get('/v1/difficulty-adjustment')

    async def get_recommended_fees(self) -> Optional[dict]:
        """fastestFee, halfHourFee, hourFee, economyFee, minimumFee in sat/vB."""
        return await self._get('/v1/fees/recommended')

    async def get_mempool(self) -> Optional[dict]:
        return await self._get('/mempool')

    async def get_hashrate(self, period: str = '3d') -> Optional[dict]:
        """Network hashrate history; currentHashrate and currentDifficulty are used."""
        return await self._get(f'/v1/mining/hashrate/{period}')

    async def get_recent_blocks(self) -> Optional[list]:
        return await self._get('/v1/blocks')

    async def get_prices(self) -> Optional[dict]:
        return await self._get('/v1/prices')
