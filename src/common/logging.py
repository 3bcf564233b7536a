"""
Logging Configuration Module

Configures structured logging for wgfleet using structlog.
"""

import sys
import logging
from pathlib import Path
from typing import Any, List, Optional
import structlog
from structlog.stdlib import LoggerFactory

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _build_processors(renderer: str) -> List[Any]:
    """
    Build the structlog processor chain.

    Args:
        renderer: "console", "json" or "auto" (console on a tty)

    Returns:
        List of processors ending with a renderer
    """
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ]
        ),
    ]

    if renderer == "auto":
        renderer = "console" if sys.stderr.isatty() else "json"

    if renderer == "console":
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )
    else:
        # journald and log shippers expect one json object per line
        processors.append(structlog.processors.JSONRenderer())

    return processors


def configure_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    service_name: str = "wgfleet",
    renderer: str = "auto"
) -> None:
    """
    Configure structured logging for the fleet manager.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file
        service_name: Name of the service for log context
        renderer: Output renderer ("auto", "console" or "json")
    """
    numeric_level = LEVELS.get(log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logging.getLogger().addHandler(file_handler)

    structlog.configure(
        processors=_build_processors(renderer),
        context_class=dict,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=service_name)

    logger = structlog.get_logger()
    logger.info(
        "logging configured",
        level=log_level,
        log_file=log_file,
        service=service_name
    )


def bind_interface(interface_name: str) -> None:
    """Attach the interface name to every log line of the current context."""
    structlog.contextvars.bind_contextvars(interface=interface_name)


def clear_interface() -> None:
    structlog.contextvars.unbind_contextvars("interface")
