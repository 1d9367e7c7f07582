"""avropipe producer/consumer entry point. Use --help for usage."""

import argparse
import asyncio
import logging
import socket
import sys
from pathlib import Path

from dotenv import load_dotenv
from prometheus_client import start_http_server

from avropipe.common.signals import remove_shutdown_signal_handlers, setup_shutdown_signal_handlers
from avropipe.runners.loops import run_consumer_loop, run_producer_loop
from avropipe.schemas.users import USERS, generate_users, log_delivery, log_skipped, log_user, user_key
from config.config import PipelineConfig, load_config
from core.auth.credentials import (
    CredentialProvider,
    EnvironmentCredentialProvider,
    StaticCredentialProvider,
)
from core.errors.exceptions import ConfigurationError, InvalidTopic, ReconnectExhausted
from core.logging.setup import log_worker_startup, setup_logging
from core.utils import generate_worker_id

# Project root directory (where .env file is located)
# __main__.py is at src/avropipe/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Publish or consume Avro-encoded Users records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Publish one random user per second
    python -m avropipe produce --config config.yaml

    # Log every received user
    python -m avropipe consume --config config.yaml

    # Expose Prometheus metrics
    python -m avropipe consume --metrics-port 9090
        """,
    )
    parser.add_argument("mode", choices=["produce", "consume"], help="Which loop to run")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Port for Prometheus metrics server (default: disabled)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-dir", type=Path, default=None, help="Log directory path (default: ./logs)")
    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        default=None,
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )
    return parser.parse_args(argv)


def start_metrics_server(preferred_port: int) -> int:
    """Start Prometheus metrics server, falling back to a free port if taken."""
    try:
        start_http_server(preferred_port)
        return preferred_port
    except OSError as e:
        if e.errno != 98:
            raise
        logger.info("Port %s already in use, finding available port", preferred_port)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            available_port = s.getsockname()[1]
        start_http_server(available_port)
        return available_port


def build_credential_provider(config: PipelineConfig) -> CredentialProvider:
    if config.security.credential_source == "none":
        return StaticCredentialProvider()
    return EnvironmentCredentialProvider()


async def run(mode: str, config: PipelineConfig, credentials: CredentialProvider) -> int:
    shutdown_event = asyncio.Event()

    def request_shutdown() -> None:
        if shutdown_event.is_set():
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks():
                task.cancel()
            return
        shutdown_event.set()

    setup_shutdown_signal_handlers(request_shutdown)
    try:
        if mode == "produce":
            return await run_producer_loop(
                config,
                generate_users(),
                shutdown_event,
                schema=USERS,
                credentials=credentials,
                on_delivery=log_delivery,
                key_fn=user_key,
            )
        return await run_consumer_loop(
            config,
            log_user,
            shutdown_event,
            on_error=log_skipped,
            credentials=credentials,
        )
    finally:
        remove_shutdown_signal_handlers()


def main(argv: list[str] | None = None) -> int:
    global logger

    args = parse_args(argv)
    load_dotenv(PROJECT_ROOT / ".env")

    worker_id = generate_worker_id(f"avropipe-{args.mode}")
    setup_logging(
        component=args.mode,
        log_dir=args.log_dir,
        console_level=getattr(logging, args.log_level),
        worker_id=worker_id,
        log_to_stdout=args.log_to_stdout,
    )
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error("Invalid configuration: %s", e, extra={"error": str(e)})
        for problem in e.context.get("problems", []):
            logger.error("  - %s", problem)
        return 1

    log_worker_startup(
        logger,
        f"avropipe {args.mode}",
        bootstrap_servers=config.kafka.bootstrap_servers,
        topic=config.kafka.topic,
        group_id=config.kafka.group_id if args.mode == "consume" else None,
        registry_url=config.schema_registry.url,
    )

    if args.metrics_port is not None:
        port = start_metrics_server(args.metrics_port)
        logger.info("Metrics server started on port %s", port)

    try:
        count = asyncio.run(run(args.mode, config, build_credential_provider(config)))
    except (ConfigurationError, InvalidTopic, ReconnectExhausted) as e:
        logger.error("Fatal error: %s", e, extra={"error": str(e)})
        return 1
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
        return 0
    except asyncio.CancelledError:
        logger.warning("Forced shutdown, pending deliveries may be lost")
        return 1

    logger.info("avropipe %s finished", args.mode, extra={"batch_size": count})
    return 0


if __name__ == "__main__":
    sys.exit(main())
