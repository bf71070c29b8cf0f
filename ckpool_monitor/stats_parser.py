import math
import re
import time
from typing import Any, Dict, List, Optional, Tuple

from .config import (
    AVG_TX_VSIZE,
    AVG_TXS_PER_BLOCK,
    BLOCK_SUBSIDY_BTC,
    FALLBACK_NETWORK_DIFFICULTY,
    FALLBACK_NETWORK_HASHRATE,
    IDLE_THRESHOLD_SECONDS,
)

# Each accepted unit-difficulty share represents 2^32 hashes on average.
NONCES_PER_SHARE = 4294967296

# (label, ckpool dsps field). Every horizon is derived on its own.
HASHRATE_HORIZONS = (
    ('1m', 'dsps1'),
    ('5m', 'dsps5'),
    ('15m', 'dsps15'),
    ('1h', 'dsps60'),
    ('6h', 'dsps360'),
    ('1d', 'dsps1440'),
    ('7d', 'dsps10080'),
)

# Fields that may carry a best difficulty, lifetime values first. ckpool
# reports "bestever" (lifetime) and "bestshare" on getuser/getworker,
# "bestdiff" (session) on clients. The effective value is the max of the
# fields present.
BEST_DIFF_FIELDS = ('bestever', 'bestshare', 'bestdiff', 'best_diff')

UNKNOWN_MINER = {'type': 'Unknown', 'name': 'Unknown Miner'}

ADDRESS_SHAPED_RE = re.compile(r'^(1|3|bc1)[a-zA-HJ-NP-Z0-9]{20,}')

# (family keywords, [(variant keywords, type, name), ...], (default type, default name))
# Rules are tried in order; the first family whose keyword appears in the
# lower-cased user agent wins.
MINER_TYPE_RULES = (
    (('nerdqaxe', 'nerdaxe', 'nerdminer'), (
        (('nerdqaxe++', 'qaxe++'), 'NerdQaxe', 'NerdQaxe++'),
        (('nerdqaxe+', 'qaxe+'), 'NerdQaxe', 'NerdQaxe+'),
        (('nerdqaxe',), 'NerdQaxe', 'NerdQaxe'),
        (('nerdaxe',), 'NerdAxe', 'NerdAxe'),
    ), ('NerdMiner', 'NerdMiner')),
    (('bitaxe', 'esp-miner'), (
        (('ultra',), 'Bitaxe', 'Bitaxe Ultra'),
        (('max',), 'Bitaxe', 'Bitaxe Max'),
        (('hex',), 'Bitaxe', 'Bitaxe Hex'),
        (('supra',), 'Bitaxe', 'Bitaxe Supra'),
        (('gamma',), 'Bitaxe', 'Bitaxe Gamma'),
    ), ('Bitaxe', 'Bitaxe')),
    (('antminer', 'bitmain'), (
        (('s21',), 'Antminer', 'Antminer S21'),
        (('s19',), 'Antminer', 'Antminer S19'),
        (('t21',), 'Antminer', 'Antminer T21'),
        (('t19',), 'Antminer', 'Antminer T19'),
        (('s17',), 'Antminer', 'Antminer S17'),
        (('s15',), 'Antminer', 'Antminer S15'),
        (('s9',), 'Antminer', 'Antminer S9'),
    ), ('Antminer', 'Antminer')),
    (('whatsminer', 'microbt'), (
        (('m50',), 'Whatsminer', 'Whatsminer M50'),
        (('m30',), 'Whatsminer', 'Whatsminer M30'),
        (('m20',), 'Whatsminer', 'Whatsminer M20'),
    ), ('Whatsminer', 'Whatsminer')),
    (('avalon', 'canaan'), (), ('Avalon', 'Avalon')),
    (('innosilicon', 't2t', 't3'), (), ('Innosilicon', 'Innosilicon')),
    (('braiins', 'bosminer', 'bos'), (), ('Braiins', 'Braiins OS+')),
    (('cgminer',), (), ('CGMiner', 'CGMiner')),
    (('bfgminer',), (), ('BFGMiner', 'BFGMiner')),
    (('nicehash',), (), ('NiceHash', 'NiceHash')),
    (('vnish',), (), ('Vnish', 'Vnish Firmware')),
    (('hiveon',), (), ('Hiveon', 'Hiveon ASIC')),
    (('luxos',), (), ('LuxOS', 'LuxOS')),
    (('axeos',), (), ('Bitaxe', 'AxeOS')),
)


# --- Primitive helpers ---

def to_number(value, default: float = 0) -> float:
    """Coerce a daemon value to a number; anything unusable becomes the default."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def get_nested_value(obj, path: str, default=0):
    """Safely fetch a dotted path from nested dicts. Containers are not returned."""
    value = obj
    for key in path.split('.'):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    if isinstance(value, (dict, list)) or value is None:
        return default
    return value


def dsps_to_hashrate(dsps) -> float:
    return to_number(dsps) * NONCES_PER_SHARE


def horizon_hashrates(raw: Dict[str, Any]) -> Dict[str, float]:
    """Hashrate in H/s for each horizon, keyed by label ('1m', '5m', ...)."""
    return {label: dsps_to_hashrate(raw.get(field)) for label, field in HASHRATE_HORIZONS}


def best_difficulty(raw: Dict[str, Any], fields: Tuple[str, ...] = BEST_DIFF_FIELDS) -> float:
    """Maximum across whichever best-difficulty fields are present."""
    if not isinstance(raw, dict):
        return 0
    candidates = [to_number(raw[field]) for field in fields if field in raw]
    return max(candidates, default=0)


def is_idle(last_share, idle_flag=False, now: Optional[float] = None) -> bool:
    if idle_flag:
        return True
    last_share = to_number(last_share)
    if last_share <= 0:
        return False
    now = time.time() if now is None else now
    return now - last_share > IDLE_THRESHOLD_SECONDS


def is_error_response(raw) -> bool:
    """True for replies that mean "no such entity" rather than zero activity."""
    if raw is None:
        return True
    if isinstance(raw, str):
        return raw == 'unknown' or 'error' in raw.lower()
    if isinstance(raw, dict):
        return bool(raw.get('error'))
    return False


def split_identity(identity: str) -> Tuple[str, Optional[str]]:
    """Split 'address.worker' into (address, worker). The worker may contain dots."""
    owner, _, suffix = (identity or '').partition('.')
    return owner, (suffix or None)


def display_worker_name(identity: str) -> str:
    """Worker label for public display; bare or address-shaped names become 'anon'."""
    _, suffix = split_identity(identity)
    if not suffix or ADDRESS_SHAPED_RE.match(suffix):
        return 'anon'
    return suffix


# --- Daemon payload normalizers ---

def parse_pool_stats(poolstats, stratifier, connector, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Build a pool snapshot from the three listener/stratifier replies.

    poolstats is authoritative; stratifierstats fills in users and shares when
    poolstats is missing, and connectorstats supplies the connection count.
    """
    now = time.time() if now is None else now
    pool = {
        'hashrate': 0,
        **{f'hashrate_{label}': 0 for label, _ in HASHRATE_HORIZONS},
        'users': 0,
        'workers': 0,
        'shares': 0,
        'accepted': 0,
        'rejected': 0,
        'sps_1m': 0,
        'sps_5m': 0,
        'best_diff': 0,
        'network_diff': 0,
        'block_height': 0,
        'blocks_found': 0,
        'uptime': 0,
        'start_time': 0,
        'last_update': 0,
        'connections': 0,
    }

    if isinstance(poolstats, dict) and not is_error_response(poolstats):
        pool['users'] = to_number(poolstats.get('users'))
        pool['workers'] = to_number(poolstats.get('workers'))
        pool['shares'] = to_number(poolstats.get('shares'))
        pool['accepted'] = to_number(poolstats.get('accepted'))
        pool['rejected'] = to_number(poolstats.get('rejected'))
        pool['sps_1m'] = to_number(poolstats.get('sps1'))
        pool['sps_5m'] = to_number(poolstats.get('sps5'))
        pool['start_time'] = to_number(poolstats.get('start'))
        pool['last_update'] = to_number(poolstats.get('update'))
        if pool['start_time'] > 0:
            pool['uptime'] = int(now - pool['start_time'])

        for label, rate in horizon_hashrates(poolstats).items():
            pool[f'hashrate_{label}'] = rate
        pool['hashrate'] = pool['hashrate_1m']

        pool['best_diff'] = best_difficulty(poolstats)
        pool['block_height'] = to_number(poolstats.get('height'))
        pool['network_diff'] = to_number(poolstats.get('diff'))

    if isinstance(stratifier, dict) and pool['users'] == 0:
        pool['users'] = to_number(get_nested_value(stratifier, 'users.count'))
        pool['shares'] = (to_number(get_nested_value(stratifier, 'shares.generated'))
                          or to_number(get_nested_value(stratifier, 'shares.count')))

    if isinstance(connector, dict):
        pool['connections'] = to_number(get_nested_value(connector, 'clients.count'))
        if pool['workers'] == 0:
            pool['workers'] = pool['connections']

    return pool


def parse_user_stats(raw, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """
    Normalize a getuser reply.

    Returns None when the daemon does not know the user, so callers can tell
    an unknown address from one with zero activity.
    """
    if not isinstance(raw, dict) or is_error_response(raw):
        return None

    last_share = to_number(raw.get('lastshare'))
    workers = raw.get('worker')
    return {
        'address': raw.get('user') or raw.get('username') or 'Unknown',
        'id': raw.get('id') or 0,
        'hashrate': horizon_hashrates(raw),
        'shares': {
            'accepted': to_number(raw.get('shares')) or to_number(raw.get('accepted')),
            'rejected': to_number(raw.get('rejected')),
            'stale': to_number(raw.get('stale')),
        },
        'best_diff': best_difficulty(raw),
        'last_share': last_share,
        'workers': workers if isinstance(workers, list) else [],
        'worker_count': to_number(raw.get('workers')),
        'is_idle': is_idle(last_share, now=now),
        'authorised': raw.get('authorised') or 0,
    }


def parse_worker_stats(raw, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """Normalize a getworker reply. None when the worker is unknown."""
    if not isinstance(raw, dict) or is_error_response(raw):
        return None

    last_share = to_number(raw.get('lastshare'))
    return {
        'name': raw.get('worker') or raw.get('workername') or 'default',
        'hashrate': horizon_hashrates(raw),
        'shares': to_number(raw.get('shares')) or to_number(raw.get('accepted')),
        'best_diff': best_difficulty(raw),
        'last_share': last_share,
        'is_idle': is_idle(last_share, raw.get('idle'), now=now),
    }


def parse_miner_type(useragent: Optional[str]) -> Dict[str, str]:
    """Identify miner hardware/firmware from a stratum user agent."""
    if not useragent:
        return dict(UNKNOWN_MINER)

    ua = useragent.lower()
    for family_keywords, variants, (default_type, default_name) in MINER_TYPE_RULES:
        if not any(keyword in ua for keyword in family_keywords):
            continue
        for variant_keywords, miner_type, name in variants:
            if any(keyword in ua for keyword in variant_keywords):
                return {'type': miner_type, 'name': name}
        return {'type': default_type, 'name': default_name}

    return {'type': 'Other', 'name': useragent[:20]}


def _client_list(client_data) -> List[Dict[str, Any]]:
    if not isinstance(client_data, dict):
        return []
    clients = client_data.get('clients')
    return [c for c in clients if isinstance(c, dict)] if isinstance(clients, list) else []


def parse_client_info(client_data) -> List[Dict[str, Any]]:
    """Normalize a ucinfo/wcinfo/clients reply into one record per connection."""
    parsed = []
    for client in _client_list(client_data):
        useragent = client.get('useragent') or ''
        dsps1 = to_number(client.get('dsps1'))
        parsed.append({
            'id': client.get('id') or 0,
            'workername': client.get('workername') or 'default',
            'useragent': useragent,
            'miner': parse_miner_type(useragent),
            'diff': to_number(client.get('diff')),
            'startdiff': to_number(client.get('startdiff')),
            'best_diff': best_difficulty(client),
            'dsps1': dsps1,
            'hashrate': dsps1 * NONCES_PER_SHARE,
            'rejected': to_number(client.get('rejected')),
            'idle': bool(client.get('idle')),
            'ip': client.get('ip') or '',
        })
    return parsed


def aggregate_miner_types(client_data) -> List[Dict[str, Any]]:
    """Count connected clients per miner name, most common first."""
    counts: Dict[str, Dict[str, Any]] = {}
    for client in _client_list(client_data):
        miner = parse_miner_type(client.get('useragent'))
        entry = counts.setdefault(miner['name'], {'name': miner['name'], 'type': miner['type'], 'count': 0})
        entry['count'] += 1
    return sorted(counts.values(), key=lambda item: item['count'], reverse=True)


# --- Block explorer payloads ---

def parse_recent_blocks(blocks, limit: int = 10, now: Optional[float] = None) -> List[Dict[str, Any]]:
    if not isinstance(blocks, list):
        return []
    parsed = []
    for block in blocks[:limit]:
        if not isinstance(block, dict):
            continue
        extras = block.get('extras') if isinstance(block.get('extras'), dict) else {}
        pool = extras.get('pool') if isinstance(extras.get('pool'), dict) else {}
        timestamp = to_number(block.get('timestamp'))
        parsed.append({
            'height': block.get('height'),
            'hash': block.get('id'),
            'time': timestamp,
            'time_ago': time_ago(timestamp, now=now),
            'miner': pool.get('name') or 'Unknown',
            'miner_slug': pool.get('slug') or '',
            'tx_count': block.get('tx_count'),
            'size': block.get('size'),
            'weight': block.get('weight'),
            'reward': to_number(extras.get('reward')),
        })
    return parsed


def parse_fees(fee_data) -> Dict[str, float]:
    fee_data = fee_data if isinstance(fee_data, dict) else {}
    return {
        'fastest': to_number(fee_data.get('fastestFee')),
        'half_hour': to_number(fee_data.get('halfHourFee')),
        'hour': to_number(fee_data.get('hourFee')),
        'economy': to_number(fee_data.get('economyFee')),
        'minimum': to_number(fee_data.get('minimumFee')),
    }


def parse_prices(price_data, now: Optional[float] = None) -> Dict[str, float]:
    price_data = price_data if isinstance(price_data, dict) else {}
    return {
        'USD': to_number(price_data.get('USD')),
        'EUR': to_number(price_data.get('EUR')),
        'GBP': to_number(price_data.get('GBP')),
        'timestamp': time.time() if now is None else now,
    }


def parse_network_stats(pool: Dict[str, Any], diff_data, fee_data, mempool_data, hashrate_data,
                        recent_blocks, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Combine the local pool view with block explorer data.

    Block height and difficulty prefer the local daemon; the explorer only
    fills them in when ckpool has no current workbase.
    """
    now = time.time() if now is None else now
    hashrate_data = hashrate_data if isinstance(hashrate_data, dict) else {}
    mempool_data = mempool_data if isinstance(mempool_data, dict) else {}
    blocks = parse_recent_blocks(recent_blocks, limit=6, now=now)

    adjustment = None
    if isinstance(diff_data, dict):
        adjustment = {
            'estimated_retarget_date': diff_data.get('estimatedRetargetDate'),
            'remaining_blocks': diff_data.get('remainingBlocks'),
            'remaining_time': diff_data.get('remainingTime'),
            'progress_percent': diff_data.get('progressPercent'),
            'difficulty_change': diff_data.get('difficultyChange'),
            'previous_retarget': diff_data.get('previousRetarget'),
        }

    return {
        'block_height': pool.get('block_height') or to_number(hashrate_data.get('currentHeight')),
        'network_hashrate': to_number(hashrate_data.get('currentHashrate')),
        'difficulty': pool.get('network_diff') or to_number(hashrate_data.get('currentDifficulty')),
        'difficulty_adjustment': adjustment,
        'mempool': {
            'size': to_number(mempool_data.get('vsize')),
            'count': to_number(mempool_data.get('count')),
            'total_fee': to_number(mempool_data.get('total_fee')),
        },
        'fees': parse_fees(fee_data),
        'recent_blocks': blocks,
        'last_block_miner': blocks[0]['miner'] if blocks else 'Unknown',
        'last_block_time': blocks[0]['time'] if blocks else 0,
        'timestamp': now,
    }


def compute_efficiency(pool: Dict[str, Any], hashrate_data, fee_data, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Statistical block-finding estimates for the pool's current hashrate.

    Expected time to a block is difficulty * 2^32 / hashrate; the chance of
    at least one block in a day is 1 - e^-lambda with lambda the expected
    blocks per day.
    """
    hashrate_data = hashrate_data if isinstance(hashrate_data, dict) else {}
    network_hashrate = to_number(hashrate_data.get('currentHashrate')) or FALLBACK_NETWORK_HASHRATE
    network_difficulty = (pool.get('network_diff')
                          or to_number(hashrate_data.get('currentDifficulty'))
                          or FALLBACK_NETWORK_DIFFICULTY)

    pool_hashrate = pool.get('hashrate') or 0
    network_share = pool_hashrate / network_hashrate * 100 if pool_hashrate > 0 else 0
    expected_block_time = (network_difficulty * NONCES_PER_SHARE / pool_hashrate
                           if pool_hashrate > 0 else math.inf)
    daily_expected_blocks = 86400 / expected_block_time if pool_hashrate > 0 else 0
    daily_block_probability = 1 - math.exp(-daily_expected_blocks)

    fees = parse_fees(fee_data)
    estimated_block_fees = fees['hour'] * AVG_TX_VSIZE * AVG_TXS_PER_BLOCK / 1e8
    block_reward = BLOCK_SUBSIDY_BTC + estimated_block_fees
    expected_daily_revenue = daily_expected_blocks * block_reward

    accepted, rejected = pool.get('accepted') or 0, pool.get('rejected') or 0
    reject_rate = rejected / (accepted + rejected) * 100 if accepted > 0 else 0
    best = pool.get('best_diff') or 0

    return {
        'pool_hashrate': pool_hashrate,
        'pool_hashrate_formatted': format_hashrate(pool_hashrate),
        'active_workers': pool.get('workers') or 0,
        'active_users': pool.get('users') or 0,
        'network_hashrate': network_hashrate,
        'network_hashrate_formatted': format_hashrate(network_hashrate),
        'network_share': network_share,
        'network_share_formatted': format_small_percent(network_share),
        # JSON has no infinity; None means "never at this hashrate".
        'expected_block_time': expected_block_time if math.isfinite(expected_block_time) else None,
        'expected_block_time_formatted': format_duration(expected_block_time),
        'daily_expected_blocks': daily_expected_blocks,
        'daily_block_probability': daily_block_probability,
        'daily_block_probability_formatted': format_small_percent(daily_block_probability * 100),
        'block_reward': block_reward,
        'expected_daily_revenue': expected_daily_revenue,
        'expected_daily_revenue_formatted': format_small_btc(expected_daily_revenue),
        'current_fees': {k: fees[k] for k in ('fastest', 'half_hour', 'hour', 'economy')},
        'estimated_block_fees': estimated_block_fees,
        'estimated_block_fees_formatted': f"{estimated_block_fees:.4f} BTC",
        'shares_per_second': pool.get('sps_1m') or 0,
        'diff_shares_accepted': accepted,
        'diff_shares_rejected': rejected,
        'reject_rate': f"{reject_rate:.2f}%" if accepted > 0 else '0%',
        'best_difficulty': best,
        'best_difficulty_formatted': format_difficulty(best),
        'timestamp': time.time() if now is None else now,
    }


# --- Display formatters ---

def format_hashrate(hashes_per_second) -> str:
    value = to_number(hashes_per_second)
    if value <= 0:
        return '0 H/s'
    units = ['H/s', 'KH/s', 'MH/s', 'GH/s', 'TH/s', 'PH/s', 'EH/s', 'ZH/s']
    index = 0
    while value >= 1000 and index < len(units) - 1:
        value /= 1000
        index += 1
    return f"{value:.2f} {units[index]}"


def format_difficulty(diff) -> str:
    diff = to_number(diff)
    if not diff:
        return '0'
    for threshold, suffix in ((1e15, 'P'), (1e12, 'T'), (1e9, 'G'), (1e6, 'M'), (1e3, 'K')):
        if diff >= threshold:
            return f"{diff / threshold:.2f} {suffix}"
    return f"{diff:.2f}"


def format_duration(seconds) -> str:
    if seconds is None or not math.isfinite(seconds):
        return 'Never (need more hashrate)'
    if seconds < 60:
        return f"{round(seconds)} seconds"
    if seconds < 3600:
        return f"{round(seconds / 60)} minutes"
    if seconds < 86400:
        return f"{round(seconds / 3600)} hours"
    if seconds < 2592000:
        return f"{round(seconds / 86400)} days"
    if seconds < 31536000:
        return f"{round(seconds / 2592000)} months"
    years = seconds / 31536000
    if years >= 1000000:
        return f"{round(years / 1000000):,} million years"
    if years >= 1000:
        return f"{round(years / 1000):,}k years"
    return f"{round(years):,} years"


def format_small_percent(percent) -> str:
    """Percentages with two significant digits once they drop below 1%."""
    percent = to_number(percent)
    if percent <= 0:
        return '0%'
    if percent >= 1:
        return f"{percent:.2f}%"
    if percent < 1e-6:
        return f"{percent:.1e}%"
    decimals = -math.floor(math.log10(percent)) + 1
    return f"{percent:.{decimals}f}%"


def format_small_btc(btc) -> str:
    btc = to_number(btc)
    if btc <= 0:
        return '0 BTC'
    if btc >= 1:
        return f"{btc:.4f} BTC"
    if btc >= 0.001:
        return f"{btc * 1000:.4f} mBTC"
    if btc >= 0.000001:
        return f"{round(btc * 1e8)} sats"
    sats = btc * 1e8
    if sats >= 0.01:
        return f"{sats:.4f} sats"
    if sats >= 0.000001:
        return f"{sats:.8f} sats"
    return '< 0.00000001 sats'


def time_ago(timestamp, now: Optional[float] = None) -> str:
    timestamp = to_number(timestamp)
    if not timestamp:
        return 'Never'
    now = time.time() if now is None else now
    seconds = int(now - timestamp)
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"
