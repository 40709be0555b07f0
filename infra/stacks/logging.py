"""
Structured logging for CDK synthesis using structlog.

Console output while working locally, JSON when synth runs in CI
(``--context log_format=json``). The level comes from ``--context log_level``.

Usage:
    from stacks.logging import bind_deployment_context, configure_logging, get_logger

    configure_logging(json_format=False)
    bind_deployment_context(config)
    logger = get_logger(__name__)
    logger.info("stack_created", stack="mindsdb-rag-dev")

Every event after ``bind_deployment_context`` carries:
    - deployment.environment: dev, staging or production
    - deployment.prefix: resource name prefix
    - cloud.account.id / cloud.region: target account and region
"""

import logging
import sys
from typing import TYPE_CHECKING

import aws_cdk as cdk
import structlog
from structlog.types import EventDict, Processor

if TYPE_CHECKING:
    from .config import EnvironmentConfig

UNRESOLVED_TOKEN = "<unresolved>"


def _mask_unresolved_tokens(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Replace CDK tokens with a marker.

    Values such as ``stack.account`` are placeholders until deploy time and would
    otherwise render as ``${Token[AWS.AccountId.8]}``.
    """
    for key, value in event_dict.items():
        if isinstance(value, str) and cdk.Token.is_unresolved(value):
            event_dict[key] = UNRESOLVED_TOKEN
    return event_dict


def _drop_unset_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Drop fields whose value is None, e.g. the account of an environment-agnostic synth."""
    return {key: value for key, value in event_dict.items() if value is not None}


def configure_logging(json_format: bool = False, log_level: str = "INFO") -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        json_format: If True, output JSON (CI). If False, pretty console output.
        log_level: Minimum log level to output.
    """
    log_level_int = getattr(logging, log_level.upper(), logging.INFO)

    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _mask_unresolved_tokens,
        _drop_unset_fields,
    ]

    if json_format:
        renderer: Processor = structlog.processors.JSONRenderer(sort_keys=True)
        pre_chain.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    # The CDK CLI reads synth output from stdout
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level_int)


def bind_deployment_context(config: "EnvironmentConfig") -> None:
    """Attach the target deployment to every subsequent log event."""
    structlog.contextvars.bind_contextvars(
        **{
            "deployment.environment": config.environment,
            "deployment.prefix": config.resource_prefix,
            "cloud.account.id": config.account,
            "cloud.region": config.region,
        }
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, typically with ``__name__``."""
    return structlog.get_logger(name)
