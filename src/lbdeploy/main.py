"""Main entry point for the load balancer stack controller.

The controller reads stack files from STACKS_DIR, converges the ELBv2
resources they describe and keeps them converged on an interval. The
ELBv2 client uses the default AWS credential chain; the cluster client uses
in-cluster configuration and falls back to the local kubeconfig.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config

from .config import Config, ConfigurationError
from .deployer import StackDeployer
from .elbv2 import new_boto3_client
from .metrics import ManagedResourceMetrics
from .reconciler import Reconciler

# LogRecord attributes that are not structured context
_RESERVED_LOG_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from SDKs
    for name in ("botocore", "boto3", "urllib3", "kubernetes"):
        logging.getLogger(name).setLevel(logging.WARNING)


def new_cluster_api() -> k8s_client.CustomObjectsApi:
    """Create the cluster API client, preferring in-cluster configuration."""
    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        k8s_config.load_kube_config()
    return k8s_client.CustomObjectsApi()


def build_deployer(config: Config, with_cluster_api: bool = True) -> StackDeployer:
    """Wire the ELBv2 client, cluster client and metrics into a deployer."""
    cluster_api = new_cluster_api() if with_cluster_api else None
    return StackDeployer(
        config,
        new_boto3_client(config.region),
        ManagedResourceMetrics(),
        cluster_api=cluster_api,
    )


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting load balancer stack controller",
        extra={
            "cluster_name": config.cluster_name,
            "vpc_id": config.vpc_id,
            "region": config.region,
            "stacks_dir": str(config.stacks_dir),
        },
    )

    try:
        reconciler = Reconciler(config, build_deployer(config))
    except k8s_config.ConfigException as e:
        logger.error("Failed to load cluster configuration", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.error(
            "Failed to initialize reconciler",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await reconciler.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
