import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config import (
    BLOCKS_CACHE_TTL_SECONDS,
    NETWORK_CACHE_TTL_SECONDS,
    POOL_CACHE_TTL_SECONDS,
    PRICE_CACHE_TTL_SECONDS,
)


@dataclass
class Snapshot:
    """Last good response payload for one endpoint."""
    ttl_seconds: float
    data: Optional[Any] = None
    timestamp: float = 0.0
    clock: Any = field(default=time.monotonic, repr=False)

    def is_fresh(self) -> bool:
        return self.data is not None and self.clock() - self.timestamp < self.ttl_seconds

    def update(self, data: Any):
        self.data = data
        self.timestamp = self.clock()

    def has_data(self) -> bool:
        return self.data is not None


def create_snapshots(clock=time.monotonic) -> Dict[str, Snapshot]:
    """One snapshot holder per cached endpoint, owned by the application."""
    return {
        'pool': Snapshot(POOL_CACHE_TTL_SECONDS, clock=clock),
        'network': Snapshot(NETWORK_CACHE_TTL_SECONDS, clock=clock),
        'blocks': Snapshot(BLOCKS_CACHE_TTL_SECONDS, clock=clock),
        'price': Snapshot(PRICE_CACHE_TTL_SECONDS, clock=clock),
        'efficiency': Snapshot(POOL_CACHE_TTL_SECONDS, clock=clock),
    }
