"""meteoracache - Offline-capable caching layer for the Meteora weather dashboard."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _build_controller(config_path: Optional[str]):
    """Load configuration and build a controller, exiting on errors."""
    from .config import ConfigError, load_config
    from .controller import CacheController
    from .store import CacheStoreError

    try:
        config = load_config(config_path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    try:
        return CacheController(config)
    except CacheStoreError as e:
        logger.error("Cache store error: %s", e)
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - install the cache and serve requests."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("meteoracache %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .server import CacheServer, ServerError

    # 1. Load configuration and build the controller
    controller = _build_controller(args.config)
    config = controller.config
    logger.info(
        "Caching for %s (version %s, %s store)",
        config.app.origin,
        config.cache.version,
        config.cache.store,
    )

    # 2. Install and activate this cache version
    if not controller.on_install():
        logger.warning("Install failed, requests will bypass the cache")

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    server = CacheServer(config.server, controller)

    try:
        try:
            server.start()
        except ServerError as e:
            logger.error("Failed to start cache server: %s", e)
            sys.exit(1)

        logger.info("All components started, waiting for shutdown signal...")

        # 4. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 5. Cleanup - stop all components
        logger.info("Shutting down components...")
        server.stop()
        controller.close()
        logger.info("Shutdown complete")


def _cmd_cache_weather(args: argparse.Namespace) -> None:
    """Execute the cache-weather command - cache weather data for a location."""
    _setup_logging(args.verbose)

    controller = _build_controller(args.config)
    try:
        cached = controller.cache_weather(args.location)
        print(f"Cached {len(cached)} weather response(s) for {args.location}.")
        if not cached:
            sys.exit(1)
    finally:
        controller.close()


def _cmd_sync(args: argparse.Namespace) -> None:
    """Execute the sync command - refresh every cached weather entry once."""
    from .network import mask_url

    _setup_logging(args.verbose)

    controller = _build_controller(args.config)
    try:
        report = controller.on_sync(args.tag)
        if report is None:
            print(f"Sync tag '{args.tag}' ignored.")
            return

        for url in report.refreshed:
            print(f"✓ REFRESHED: {mask_url(url)}")
        for url, reason in report.failed.items():
            print(f"✗ FAILED: {mask_url(url)} ({reason})")

        print(f"\nResult: {len(report.refreshed)}/{report.attempted} entries refreshed")

        if report.failed:
            sys.exit(1)
    finally:
        controller.close()


def _cmd_status(args: argparse.Namespace) -> None:
    """Execute the status command - list cache namespaces and entry counts."""
    controller = _build_controller(args.config)
    try:
        status = controller.status()
        current = controller.lifecycle.current_namespaces
        print(f"Cache version: {status['version']}")
        if not status["namespaces"]:
            print("No cache namespaces.")
            return
        for name, count in status["namespaces"].items():
            marker = "*" if name in current else " "
            print(f"{marker} {name}: {count} entries")
    finally:
        controller.close()


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to configuration file (default: built-in defaults)",
    )


def _add_verbose_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )


def main() -> None:
    """Main entry point for the meteoracache package."""
    from .sync import WEATHER_SYNC_TAG

    parser = argparse.ArgumentParser(
        description="meteoracache - Offline-capable caching layer for the Meteora weather dashboard"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"meteoracache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the caching server (default)",
    )
    _add_config_argument(run_parser)
    _add_verbose_argument(run_parser)
    run_parser.set_defaults(func=_cmd_run)

    # Cache-weather subcommand
    cache_weather_parser = subparsers.add_parser(
        "cache-weather",
        help="Cache current weather and forecast for a location",
    )
    cache_weather_parser.add_argument("location", help="Location name, e.g. 'London'")
    _add_config_argument(cache_weather_parser)
    _add_verbose_argument(cache_weather_parser)
    cache_weather_parser.set_defaults(func=_cmd_cache_weather)

    # Sync subcommand
    sync_parser = subparsers.add_parser(
        "sync",
        help="Refresh every cached weather entry once",
    )
    sync_parser.add_argument(
        "--tag",
        default=WEATHER_SYNC_TAG,
        help=f"Sync tag to fire (default: {WEATHER_SYNC_TAG})",
    )
    _add_config_argument(sync_parser)
    _add_verbose_argument(sync_parser)
    sync_parser.set_defaults(func=_cmd_sync)

    # Status subcommand
    status_parser = subparsers.add_parser(
        "status",
        help="List cache namespaces and their entry counts",
    )
    _add_config_argument(status_parser)
    status_parser.set_defaults(func=_cmd_status)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = None
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
