"""Daemon entry point: continuous reconciliation.

Configuration comes from the environment (see ``Config.from_env``). The
definitions directory is typically kept up to date by a git-sync sidecar;
every cycle re-reads it, refreshes the state and applies the difference.

SECRETLESS ARCHITECTURE:
In the default managedIdentity credential mode no service principal
secrets are accepted; the process refuses to start when one is present.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TextIO

from .config import Config, ConfigurationError
from .reconciler import EXIT_INVALID_INPUT, INVALID_INPUT_ERRORS, Reconciler
from .security import SecretlessViolationError

HANDLER_NAME = "converge"

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# LogRecord attributes that are not structured extra fields
_RESERVED_ATTRIBUTES = frozenset(
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
        "asctime",
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
            if key not in _RESERVED_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    log_format: str = "json", level: int = logging.INFO, stream: TextIO | None = None
) -> None:
    """Configure root logging.

    Calling it again replaces the handler installed by the previous call.

    Args:
        log_format: ``json`` for structured output, ``text`` for humans.
        level: Root log level.
        stream: Output stream (default: stdout).
    """
    if log_format not in ("json", "text"):
        raise ValueError(f"Unknown log format: {log_format}")

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.set_name(HANDLER_NAME)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def serve(config: Config) -> int:
    """Run the reconciler until SIGTERM/SIGINT.

    Args:
        config: Validated configuration.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting converge",
        extra={
            "definitions_path": str(config.definitions_path),
            "state_path": str(config.state_path),
            "subscription_id": config.subscription_id,
            "credential_mode": config.credential_mode.value,
        },
    )

    reconciler = Reconciler(config)
    try:
        reconciler.validate()
    except SecretlessViolationError as e:
        # SECURITY: Credential detected - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_INVALID_INPUT
    except INVALID_INPUT_ERRORS as e:
        logger.error(
            "Invalid definitions or configuration",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_INVALID_INPUT

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
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    logger.info("converge stopped")
    return 0


async def main() -> int:
    """Load configuration from the environment and serve.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_INVALID_INPUT

    return await serve(config)


def run() -> None:
    """Entry point for the daemon."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
