"""Companion Cube background daemon.

Starts the engine's scheduler, optionally serves the JSON API, and blocks
until SIGTERM or SIGINT.

Features:
- Mode-aware analysis cycles in a background thread
- Optional web server (Flask) in a second thread
- Nudges written to the log (pass another notifier to the engine to deliver them elsewhere)
- Graceful signal handling (SIGTERM, SIGINT)

Usage:
    python -m companion.daemon --web --web-port 55556
    python -m companion.daemon --mode study --verbose
"""

import argparse
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from .engine import CompanionEngine
from .config import ConfigManager
from .models import Nudge

logger = logging.getLogger(__name__)


def log_notifier(nudge: Nudge) -> None:
    """Default nudge sink: write it to the log."""
    logger.info(f"NUDGE [{nudge.mode.value}] {nudge.title}: {nudge.message}")


class CompanionDaemon:
    """Runs the engine until a termination signal arrives.

    Attributes:
        engine: The wired engine.
        enable_web: Whether the JSON API is served.
        web_host, web_port: Where the API listens.
    """

    def __init__(self, engine: CompanionEngine, enable_web: bool = False,
                 web_host: str = "127.0.0.1", web_port: int = 55556):
        self.running = True
        self.engine = engine
        self.enable_web = enable_web
        self.web_host = web_host
        self.web_port = web_port
        self.web_thread: Optional[threading.Thread] = None

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False

    def _start_web_server(self):
        """Serve the JSON API; runs in its own thread."""
        from web.app import app, init_app

        init_app(self.engine)
        logger.info(f"Starting web server on http://{self.web_host}:{self.web_port}")
        app.run(host=self.web_host, port=self.web_port, debug=False, use_reloader=False)

    def run(self):
        """Start everything and block until stopped."""
        logger.info("Companion daemon starting...")
        connections = self.engine.check_connections()
        for service, ok in connections.items():
            if not ok:
                logger.warning(f"{service} is not reachable; summaries will use the fallback until it is")

        self.engine.start()

        if self.enable_web:
            self.web_thread = threading.Thread(target=self._start_web_server, daemon=True)
            self.web_thread.start()

        try:
            while self.running:
                time.sleep(1)
        finally:
            self.engine.stop()
            logger.info("Companion daemon stopped")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Companion Cube activity engine")
    parser.add_argument("--config", type=Path, default=None,
                        help=f"Config file (default: {ConfigManager.DEFAULT_PATH})")
    parser.add_argument("--web", action="store_true", help="Enable the JSON API server")
    parser.add_argument("--web-port", type=int, default=None, help="API port (default: from config)")
    parser.add_argument("--mode", default=None, help="Switch to this mode on start")
    parser.add_argument("--init-config", action="store_true",
                        help="Write a default config file and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = ConfigManager(args.config)
    if args.init_config:
        config.create_default_file()
        return 0

    engine = CompanionEngine(config, notifier=log_notifier)
    if args.mode:
        try:
            engine.set_mode(args.mode)
        except ValueError as e:
            parser.error(str(e))

    daemon = CompanionDaemon(
        engine,
        enable_web=args.web,
        web_host=config.config.web.host,
        web_port=args.web_port or config.config.web.port,
    )
    daemon.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
