import os

# --- Configuration ---
# Directory holding the ckpool unix sockets ("listener" and "stratifier").
CKPOOL_SOCKET_DIR = os.getenv('CKPOOL_SOCKET_DIR', '/tmp/ckpool')
# ckpool's log directory. Per-worker record files live under <dir>/users/.
CKPOOL_LOGS_DIR = os.getenv('CKPOOL_LOGS_DIR', '/var/log/ckpool')
# Persistent miner cache. Relative by default so it is created in the working directory.
MINER_CACHE_FILE = os.getenv('CKPOOL_MONITOR_CACHE_FILE', os.path.join('data', 'miner-types.json'))

SERVER_HOST = os.getenv('CKPOOL_MONITOR_HOST', '0.0.0.0')
SERVER_PORT = int(os.getenv('CKPOOL_MONITOR_PORT', '3000'))

# --- Daemon Socket Protocol ---
LISTENER_SOCKET_NAME = 'listener'
STRATIFIER_SOCKET_NAME = 'stratifier'
SOCKET_TIMEOUT_SECONDS = 5.0  # connect until a complete frame has been received

# --- Stats ---
IDLE_THRESHOLD_SECONDS = 300  # no share for 5 minutes means the worker is idle
LEADERBOARD_SIZE = 99

# --- Response Snapshot TTLs ---
POOL_CACHE_TTL_SECONDS = 10
NETWORK_CACHE_TTL_SECONDS = 30
BLOCKS_CACHE_TTL_SECONDS = 30
PRICE_CACHE_TTL_SECONDS = 60

# --- Miner Cache Eviction ---
CACHE_RETENTION_DAYS = int(os.getenv('CKPOOL_MONITOR_CACHE_RETENTION_DAYS', '28'))
CACHE_PRUNE_INTERVAL_HOURS = 24
CACHE_PRUNE_INITIAL_DELAY_SECONDS = 3600  # let the cache warm up before the first sweep
CACHE_THREAD_POOL_SIZE = 2

# --- Access Gate ---
# Shared secret for the front end. A random token is generated at startup when unset.
API_TOKEN = os.getenv('CKPOOL_API_TOKEN')
RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_MAX_REQUESTS = 120
RATE_LIMIT_CLEANUP_INTERVAL_SECONDS = 60
POOL_REQUEST_HEADER = 'X-Pool-Request'
POOL_REQUEST_MARKER = 'internal'
POOL_TOKEN_HEADER = 'X-Pool-Token'
HEALTH_PATH = '/health'

# --- Block Explorer (mempool.space compatible) ---
MEMPOOL_API_URL = os.getenv('MEMPOOL_API_URL', 'https://mempool.space/api')
MEMPOOL_API_TIMEOUT = 10  # seconds

# --- Efficiency Estimates ---
BLOCK_SUBSIDY_BTC = 3.125
FALLBACK_NETWORK_HASHRATE = 700e18  # ~700 EH/s when the explorer is unreachable
FALLBACK_NETWORK_DIFFICULTY = 100e12
AVG_TX_VSIZE = 250
AVG_TXS_PER_BLOCK = 3000


# --- Global Constants ---
# Mainnet legacy, P2SH and bech32 addresses.
BTC_ADDRESS_PATTERN = r'^(1|3|bc1)[a-zA-HJ-NP-Z0-9]{25,62}$'
