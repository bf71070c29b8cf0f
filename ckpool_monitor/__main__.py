import argparse
import logging
import os
import sys

# Allow running the package directory directly (e.g. `python ckpool_monitor`)
# by putting the project root on the path before the absolute imports below.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    sys.path.insert(0, os.path.dirname(script_dir))

from ckpool_monitor import config, server

# --- Centralized Logging Configuration ---
log = logging.getLogger("CKPoolMonitor")


def main():
    parser = argparse.ArgumentParser(
        description="ckpool Monitor - Telemetry API for a solo Bitcoin mining pool",
        epilog="""
Examples:
  # Local ckpool with default socket and log locations
  %(prog)s

  # Custom socket directory and cache location
  %(prog)s --socket-dir /run/ckpool --cache-file /var/lib/ckpool-monitor/miner-types.json

Environment:
  CKPOOL_API_TOKEN   Shared secret for the front end. Random per process when unset.
  MEMPOOL_API_URL    Block explorer base URL (default https://mempool.space/api).
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--host', default=config.SERVER_HOST, help="Address to listen on.")
    parser.add_argument('--port', type=int, default=config.SERVER_PORT, help="Port to listen on.")
    parser.add_argument('--socket-dir', default=config.CKPOOL_SOCKET_DIR,
                        help="Directory containing the ckpool 'listener' and 'stratifier' sockets.")
    parser.add_argument('--logs-dir', default=config.CKPOOL_LOGS_DIR,
                        help="ckpool log directory; per-worker files are read from <logs-dir>/users.")
    parser.add_argument('--cache-file', default=config.MINER_CACHE_FILE,
                        help="Path of the persistent miner cache (JSON).")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    if not (1 <= args.port <= 65535):
        log.critical(f"Invalid port: {args.port}")
        sys.exit(1)
    if not os.path.isdir(args.socket_dir):
        log.warning(f"ckpool socket directory '{args.socket_dir}' does not exist yet (daemon not started?).")

    server.run_server(
        host=args.host,
        port=args.port,
        socket_dir=args.socket_dir,
        logs_dir=args.logs_dir,
        cache_file=args.cache_file,
    )


if __name__ == "__main__":
    main()
