"""
Logging setup for applications embedding docdb.

docdb itself only emits records through module-level loggers; it never
configures handlers on import. Applications (and the test suite) call
setup_logging() once at startup.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import DocDbConfig, ObservabilityConfig


def setup_logging(config: DocDbConfig | ObservabilityConfig | None = None) -> None:
    """Configure logging based on configuration.

    Args:
        config: docdb configuration, or just its observability section.
            Defaults are read from the environment when omitted.
    """
    if config is None:
        observability = ObservabilityConfig.from_env()
    elif isinstance(config, DocDbConfig):
        observability = config.observability
    else:
        observability = config

    level = getattr(logging, observability.log_level.upper(), logging.INFO)

    if observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
