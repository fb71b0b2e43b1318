from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from werkzeug.serving import make_server

from .agent import Agent
from .client import ServerClient
from .config import DEFAULT_CONFIG, load_config, parse_addr, parse_duration
from .corpus import CorpusManager
from .errors import ConfigError, FilesystemError
from .inventory import InventoryStore
from .output import Ansi, colorize
from .server import create_app

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s %(name)s - %(message)s"
FILE_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def parse_server_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="forit playbook server")
    parser.add_argument("--addr", help="Listen address (default: :8080)")
    parser.add_argument("--playbook-dir", type=Path, help="Directory containing playbook files (default: ./playbooks)")
    parser.add_argument("--data-dir", type=Path, help="Directory for inventory.json (default: /etc/for)")
    parser.add_argument("--debounce", type=float, help="Seconds of quiet before reloading playbooks (default: 2)")
    _add_common_args(parser)
    return parser.parse_args(argv)


def parse_agent_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="forit agent")
    parser.add_argument("--server", help="Server address host:port (default: localhost:8080)")
    parser.add_argument("--interval", help="Check interval, e.g. 30m or 1h (default: 30m)")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be executed without making changes")
    parser.add_argument("--run-once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--customer", help="Customer name (required)")
    parser.add_argument("--environment", help="Environment name (required)")
    parser.add_argument("--hostname", help="Override the hostname reported to the server")
    _add_common_args(parser)
    return parser.parse_args(argv)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to forit config file (default: /etc/for/main.conf)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    parser.add_argument("--log-dir", type=Path, help="Also write <component>.log and <component>.error.log here")


def configure_logging(level: str, *, component: str = "forit", log_dir: Optional[Path] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    if log_dir is None:
        return
    log_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
    formatter = logging.Formatter(FILE_LOG_FORMAT)
    root = logging.getLogger()
    for filename, handler_level in ((f"{component}.log", logging.NOTSET), (f"{component}.error.log", logging.ERROR)):
        handler = logging.FileHandler(log_dir / filename)
        handler.setLevel(handler_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
    logger.info("%s logging to %s", component, log_dir)


def _fail(message: str) -> int:
    print(colorize(message, Ansi.RED), file=sys.stderr)
    return 1


def server_main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_server_args(argv)
    configure_logging(args.log_level, component="server", log_dir=args.log_dir)

    try:
        cfg = load_config(args.config).server
        host, port = parse_addr(args.addr or cfg.addr)
    except ConfigError as exc:
        return _fail(f"Configuration error: {exc}")
    playbook_dir = (args.playbook_dir or cfg.playbook_dir).resolve()
    data_dir = args.data_dir or cfg.data_dir
    debounce = args.debounce if args.debounce is not None else cfg.debounce

    logger.info("Using playbook directory: %s", playbook_dir)
    try:
        inventory = InventoryStore(data_dir)
        corpus = CorpusManager(playbook_dir, debounce=debounce)
    except FilesystemError as exc:
        logger.error("Startup failed: %s", exc)
        return 1

    corpus.start()
    app = create_app(corpus, inventory)
    try:
        httpd = make_server(host, port, app, threaded=True)
    except OSError as exc:
        corpus.stop()
        logger.error("Failed to listen on %s:%s: %s", host, port, exc)
        return 1

    def _shutdown(signum, _frame) -> None:
        logger.info("Received signal %s, shutting down server...", signum)
        # shutdown() blocks until serve_forever returns, so it cannot run on this thread.
        threading.Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    logger.warning(
        "The control channel has no authentication or TLS; expose it only behind an authenticating proxy"
    )
    logger.info("Starting server on %s:%s", host, port)
    try:
        httpd.serve_forever()
    finally:
        corpus.stop()
        httpd.server_close()
    return 0


def agent_main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_agent_args(argv)
    configure_logging(args.log_level, component="client", log_dir=args.log_dir)

    try:
        cfg = load_config(args.config).agent
        interval = parse_duration(args.interval or cfg.interval)
    except ConfigError as exc:
        return _fail(f"Configuration error: {exc}")
    customer = args.customer or cfg.customer
    environment = args.environment or cfg.environment
    if not customer or not environment:
        return _fail("Customer and environment parameters are required")

    server = args.server or cfg.server
    logger.info("Connecting to server at %s (customer: %s, environment: %s)", server, customer, environment)
    with ServerClient(server, customer, environment) as client:
        agent = Agent(
            client,
            hostname=args.hostname or cfg.hostname,
            dry_run=args.dry_run or cfg.dry_run,
            interval=interval,
        )
        if args.run_once:
            logger.info("Running in one-shot mode")
            code = agent.run_once()
            logger.info("One-shot execution complete")
            return code

        def _stop(signum, _frame) -> None:
            logger.info("Received signal %s, stopping after the current command", signum)
            agent.stop()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)
        agent.run_forever()
    return 0
