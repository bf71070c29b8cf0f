import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional

from aiohttp import web

from .access_gate import (
    ApiGate,
    RateLimiter,
    api_protection_middleware,
    generate_api_token,
    rate_limit_middleware,
)
from .ckpool_client import CKPoolClient
from .config import (
    BTC_ADDRESS_PATTERN,
    CKPOOL_LOGS_DIR,
    CKPOOL_SOCKET_DIR,
    HEALTH_PATH,
    LEADERBOARD_SIZE,
    MINER_CACHE_FILE,
    SERVER_HOST,
    SERVER_PORT,
)
from .errors import (
    CKPoolConnectionError,
    CKPoolError,
    EntityNotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from .mempool_client import MempoolAPIClient
from .miner_cache import MinerCache
from .state import Snapshot, create_snapshots
from .stats_parser import (
    aggregate_miner_types,
    best_difficulty,
    compute_efficiency,
    display_worker_name,
    dsps_to_hashrate,
    format_difficulty,
    format_hashrate,
    is_error_response,
    is_idle,
    parse_client_info,
    parse_network_stats,
    parse_pool_stats,
    parse_prices,
    parse_recent_blocks,
    parse_user_stats,
    parse_worker_stats,
    split_identity,
    to_number,
)
from .tasks import cleanup_background_tasks, run_in_cache_executor, start_background_tasks

log = logging.getLogger("CKPoolMonitor.Server")

BTC_ADDRESS_RE = re.compile(BTC_ADDRESS_PATTERN)
WORKER_NAME_RE = re.compile(r'^[\w.\-+]{1,64}$')


# --- Response helpers ---

def json_ok(data: Any, **extra) -> web.Response:
    return web.json_response({'success': True, 'data': data, **extra})


def json_error(message: str, status: int) -> web.Response:
    return web.json_response({'success': False, 'error': message}, status=status)


def stale_or_error(snapshot: Snapshot, label: str, error: Exception) -> web.Response:
    """Serve the last good payload marked stale, or a 500 if there is none."""
    log.error(f"{label} error: {type(error).__name__}: {error}")
    if snapshot.has_data():
        return json_ok(snapshot.data, stale=True)
    return json_error(str(error), 500)


def validate_btc_address(address: str) -> str:
    if not address or not BTC_ADDRESS_RE.match(address):
        raise ValidationError('Invalid Bitcoin address')
    return address


def validate_worker_name(worker: str) -> str:
    if not worker or not WORKER_NAME_RE.match(worker):
        raise ValidationError('Invalid worker name')
    return worker


def require_entity(parsed: Optional[Dict[str, Any]], message: str) -> Dict[str, Any]:
    """Normalized record, or EntityNotFoundError when the daemon does not know it."""
    if parsed is None:
        raise EntityNotFoundError(message)
    return parsed


def _pool_replies_missing(pool_stats: Dict[str, Any]) -> bool:
    return all(pool_stats.get(key) is None for key in ('poolstats', 'stratifier', 'connector'))


async def fetch_parsed_pool_stats(client: CKPoolClient) -> Dict[str, Any]:
    """Pool snapshot, or CKPoolConnectionError when every daemon call failed."""
    pool_stats = await client.get_pool_stats()
    if _pool_replies_missing(pool_stats):
        raise CKPoolConnectionError('ckpool daemon unreachable')
    parsed = parse_pool_stats(pool_stats['poolstats'], pool_stats['stratifier'], pool_stats['connector'])
    return {**parsed, 'raw': {k: pool_stats[k] for k in ('poolstats', 'stratifier', 'connector')},
            'timestamp': pool_stats['timestamp']}


# --- Blocking cache reconciliation (run in the cache executor) ---

def blocking_reconcile_user_clients(cache: MinerCache, address: str, clients: List[Dict[str, Any]],
                                    raw_clients: List[Dict[str, Any]], now: float) -> float:
    """
    Record the user's connected clients and raise each one's best difficulty
    from every source. Writes the cache once. Returns the highest best seen.
    """
    cache.update_from_clients(raw_clients, seen_at=now)
    highest = 0
    for client in clients:
        _, suffix = split_identity(client['workername'])
        identity = f"{address}.{suffix}" if suffix else address
        client['identity'] = identity
        client['best_diff'] = cache.merge_best_difficulty(identity, client['best_diff'])
        client['miner_type'] = cache.get_miner_type(identity)
        highest = max(highest, client['best_diff'])
    cache.persist_if_dirty()
    return highest


def blocking_reconcile_worker(cache: MinerCache, identity: str, api_best: float,
                              raw_clients: List[Dict[str, Any]], now: float) -> Dict[str, Any]:
    cache.update_from_clients(raw_clients, seen_at=now)
    best = cache.merge_best_difficulty(identity, api_best)
    miner_type = cache.get_miner_type(identity)
    cache.persist_if_dirty()
    return {'best_diff': best, 'miner_type': miner_type}


def blocking_build_leaderboard(cache: MinerCache, workers: List[Dict[str, Any]],
                               clients: List[Dict[str, Any]], now: float,
                               limit: int = LEADERBOARD_SIZE) -> List[Dict[str, Any]]:
    """Top workers by all-time best difficulty, reconciled across every source."""
    cache.update_from_clients(clients, seen_at=now)
    cache.update_best_diffs(workers)

    connected = {c.get('workername') for c in clients if isinstance(c, dict) and c.get('workername')}
    entries = []
    for worker in workers:
        if not isinstance(worker, dict):
            continue
        identity = worker.get('worker') or worker.get('workername') or ''
        if not identity:
            continue
        api_best = best_difficulty(worker, ('bestever', 'bestshare', 'bestdiff'))
        best = cache.merge_best_difficulty(identity, api_best)
        if best <= 0:
            continue
        hashrate = dsps_to_hashrate(worker.get('dsps1'))
        entries.append({
            'worker_name': display_worker_name(identity),
            'miner_type': cache.get_miner_type(identity),
            'is_online': identity in connected,
            'best_diff': best,
            'best_diff_formatted': format_difficulty(best),
            'hashrate': hashrate,
            'hashrate_formatted': format_hashrate(hashrate),
            'last_seen_at': cache.last_seen_at.get(identity),
        })

    cache.persist_if_dirty()
    entries.sort(key=lambda entry: entry['best_diff'], reverse=True)
    return entries[:limit]


# --- Handlers ---

async def _none():
    return None


async def handle_health(request):
    app = request.app
    return json_ok({
        'status': 'ok',
        'uptime': int(time.time() - app.get('start_time', time.time())),
        'sockets': app['ckpool_client'].get_socket_status(),
        'cache': app['miner_cache'].get_stats(),
    })


async def handle_pool(request):
    snapshot = request.app['snapshots']['pool']
    if snapshot.is_fresh():
        return json_ok(snapshot.data, cached=True)
    try:
        data = await fetch_parsed_pool_stats(request.app['ckpool_client'])
    except CKPoolError as e:
        return stale_or_error(snapshot, 'Pool stats', e)
    snapshot.update(data)
    return json_ok(data)


async def handle_network(request):
    app = request.app
    snapshot = app['snapshots']['network']
    if snapshot.is_fresh():
        return json_ok(snapshot.data)

    mempool = app['mempool_client']
    pool_stats, diff_data, fee_data, mempool_data, hashrate_data, recent_blocks = await asyncio.gather(
        app['ckpool_client'].get_pool_stats(),
        mempool.get_difficulty_adjustment(),
        mempool.get_recommended_fees(),
        mempool.get_mempool(),
        mempool.get_hashrate('3d'),
        mempool.get_recent_blocks(),
    )
    explorer_replies = (diff_data, fee_data, mempool_data, hashrate_data, recent_blocks)
    if _pool_replies_missing(pool_stats) and all(reply is None for reply in explorer_replies):
        return stale_or_error(
            snapshot, 'Network stats', UpstreamUnavailableError('ckpool daemon and block explorer unreachable')
        )

    pool = parse_pool_stats(pool_stats['poolstats'], pool_stats['stratifier'], pool_stats['connector'])
    data = parse_network_stats(pool, diff_data, fee_data, mempool_data, hashrate_data, recent_blocks)
    snapshot.update(data)
    return json_ok(data)


async def handle_price(request):
    snapshot = request.app['snapshots']['price']
    if snapshot.is_fresh():
        return json_ok(snapshot.data)
    price_data = await request.app['mempool_client'].get_prices()
    if not isinstance(price_data, dict):
        return stale_or_error(snapshot, 'Price fetch', UpstreamUnavailableError('Price feed unavailable'))
    data = parse_prices(price_data)
    snapshot.update(data)
    return json_ok(data)


async def handle_recent_blocks(request):
    snapshot = request.app['snapshots']['blocks']
    if snapshot.is_fresh():
        return json_ok(snapshot.data)
    blocks = await request.app['mempool_client'].get_recent_blocks()
    if not isinstance(blocks, list):
        return stale_or_error(snapshot, 'Recent blocks', UpstreamUnavailableError('Block feed unavailable'))
    data = parse_recent_blocks(blocks, limit=10)
    snapshot.update(data)
    return json_ok(data)


async def handle_efficiency(request):
    app = request.app
    snapshot = app['snapshots']['efficiency']
    mempool = app['mempool_client']
    try:
        pool, hashrate_data, fee_data = await asyncio.gather(
            fetch_parsed_pool_stats(app['ckpool_client']),
            mempool.get_hashrate('3d'),
            mempool.get_recommended_fees(),
        )
    except CKPoolError as e:
        return stale_or_error(snapshot, 'Efficiency stats', e)
    data = compute_efficiency(pool, hashrate_data, fee_data)
    snapshot.update(data)
    return json_ok(data)


async def handle_user_stats(request):
    app = request.app
    try:
        address = validate_btc_address(request.match_info.get('address', ''))
    except ValidationError as e:
        return json_error(str(e), 400)

    client = app['ckpool_client']
    user_raw, client_raw = await asyncio.gather(
        client.get_user_stats(address),
        client.get_user_clients(address),
    )
    if user_raw is None:
        return json_error('Failed to load statistics', 500)
    try:
        parsed = require_entity(parse_user_stats(user_raw), 'Address not found')
    except EntityNotFoundError as e:
        return json_error(str(e), 404)

    clients = parse_client_info(client_raw)

    # ucinfo does not report a reliable dsps1 for every miner; the worker
    # aggregate from getworker is steadier.
    suffixes = [split_identity(c['workername'])[1] for c in clients]
    worker_replies = await asyncio.gather(
        *(client.get_worker_stats(address, suffix) if suffix else _none() for suffix in suffixes)
    )
    for entry, worker_raw in zip(clients, worker_replies):
        if isinstance(worker_raw, dict) and not is_error_response(worker_raw) and 'dsps1' in worker_raw:
            entry['dsps1'] = to_number(worker_raw['dsps1'])
            entry['hashrate'] = dsps_to_hashrate(entry['dsps1'])

    raw_clients = client_raw.get('clients') if isinstance(client_raw, dict) else None
    highest = await run_in_cache_executor(
        app, blocking_reconcile_user_clients, app['miner_cache'], address, clients,
        raw_clients if isinstance(raw_clients, list) else [], time.time(),
    )
    parsed['best_diff'] = max(parsed['best_diff'], highest)

    return json_ok({**parsed, 'clients': clients, 'raw': user_raw, 'timestamp': time.time()})


async def handle_worker_stats(request):
    app = request.app
    try:
        address = validate_btc_address(request.match_info.get('address', ''))
        worker = validate_worker_name(request.match_info.get('worker', ''))
    except ValidationError as e:
        return json_error(str(e), 400)

    identity = f"{address}.{worker}"
    client = app['ckpool_client']
    worker_raw, client_raw = await asyncio.gather(
        client.get_worker_stats(address, worker),
        client.get_worker_clients(identity),
    )
    if worker_raw is None:
        return json_error('Failed to load worker statistics', 500)
    try:
        parsed = require_entity(parse_worker_stats(worker_raw), 'Worker not found')
    except EntityNotFoundError as e:
        return json_error(str(e), 404)

    clients = parse_client_info(client_raw)
    connection = clients[0] if clients else None
    raw_clients = client_raw.get('clients') if isinstance(client_raw, dict) else None
    reconciled = await run_in_cache_executor(
        app, blocking_reconcile_worker, app['miner_cache'], identity, parsed['best_diff'],
        raw_clients if isinstance(raw_clients, list) else [], time.time(),
    )

    miner_type = connection['miner']['name'] if connection else reconciled['miner_type']
    data = {
        **parsed,
        'name': worker,
        'full_name': identity,
        'best_diff': reconciled['best_diff'],
        'is_idle': is_idle(parsed['last_share'], connection['idle'] if connection else False),
        'miner_type': miner_type,
        'useragent': connection['useragent'] if connection else '',
        'current_diff': connection['diff'] if connection else 0,
        'timestamp': time.time(),
    }
    return json_ok(data)


async def handle_leaderboard(request):
    app = request.app
    client = app['ckpool_client']
    workers_data, clients_data = await asyncio.gather(client.get_all_workers(), client.get_all_clients())

    workers = workers_data.get('workers') if isinstance(workers_data, dict) else None
    if not isinstance(workers, list):
        return json_ok([])
    clients = clients_data.get('clients') if isinstance(clients_data, dict) else None
    clients = clients if isinstance(clients, list) else []

    leaderboard = await run_in_cache_executor(
        app, blocking_build_leaderboard, app['miner_cache'], workers, clients, time.time()
    )
    return json_ok(leaderboard)


async def handle_miner_types(request):
    app = request.app
    clients_data = await app['ckpool_client'].get_all_clients()
    clients = clients_data.get('clients') if isinstance(clients_data, dict) else None
    if not isinstance(clients, list):
        return json_ok([])

    cache = app['miner_cache']

    def blocking_record_clients():
        cache.update_from_clients(clients)
        cache.persist_if_dirty()

    await run_in_cache_executor(app, blocking_record_clients)
    return json_ok(aggregate_miner_types(clients_data))


@web.middleware
async def cache_control_middleware(request, handler):
    """API responses are live data and must never be cached by browsers or proxies."""
    response = await handler(request)
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    response.headers["Pragma"] = "no-cache"
    return response


def create_app(ckpool_client: Optional[CKPoolClient] = None, miner_cache: Optional[MinerCache] = None,
               mempool_client: Optional[MempoolAPIClient] = None, api_token: Optional[str] = None,
               rate_limiter: Optional[RateLimiter] = None) -> web.Application:
    """Assemble the aggregation API. Every collaborator can be injected."""
    app = web.Application(middlewares=[rate_limit_middleware, api_protection_middleware, cache_control_middleware])
    app['ckpool_client'] = ckpool_client if ckpool_client is not None else CKPoolClient(CKPOOL_SOCKET_DIR)
    app['miner_cache'] = miner_cache if miner_cache is not None else MinerCache(MINER_CACHE_FILE, CKPOOL_LOGS_DIR)
    app['mempool_client'] = mempool_client if mempool_client is not None else MempoolAPIClient()
    # An empty token is never a usable secret.
    app['api_token'] = api_token or generate_api_token()
    app['api_gate'] = ApiGate(app['api_token'])
    app['rate_limiter'] = rate_limiter if rate_limiter is not None else RateLimiter()
    app['snapshots'] = create_snapshots()

    app.on_startup.append(start_background_tasks)
    app.on_cleanup.append(cleanup_background_tasks)

    app.router.add_get(HEALTH_PATH, handle_health)
    app.router.add_get("/pool", handle_pool)
    app.router.add_get("/network", handle_network)
    app.router.add_get("/price", handle_price)
    app.router.add_get("/blocks/recent", handle_recent_blocks)
    app.router.add_get("/efficiency", handle_efficiency)
    app.router.add_get("/leaderboard", handle_leaderboard)
    app.router.add_get("/miner-types", handle_miner_types)
    app.router.add_get("/stats/{address}", handle_user_stats)
    app.router.add_get("/stats/{address}/{worker}", handle_worker_stats)
    return app


def run_server(host: str = SERVER_HOST, port: int = SERVER_PORT, socket_dir: str = CKPOOL_SOCKET_DIR,
               logs_dir: str = CKPOOL_LOGS_DIR, cache_file: str = MINER_CACHE_FILE):
    app = create_app(
        ckpool_client=CKPoolClient(socket_dir),
        miner_cache=MinerCache(cache_file, logs_dir),
    )
    log.info(f"Server starting on http://{host}:{port}")
    log.info(f"Miner cache file: {cache_file}")
    log.info(f"ckpool logs directory: {logs_dir}")
    web.run_app(app, host=host, port=port)
