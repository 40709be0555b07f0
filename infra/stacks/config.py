"""
Environment configuration for the MindsDB RAG infrastructure.

Values are resolved in this order:
1. CDK context (cdk.json or --context key=value)
2. Environment variables (ENVIRONMENT, CDK_DEFAULT_ACCOUNT, CDK_DEFAULT_REGION, ALERT_EMAIL)
3. Per-environment defaults below

Usage:
    from stacks.config import EnvironmentConfig

    config = EnvironmentConfig.from_context(app)
"""

import os
from dataclasses import dataclass, field

from aws_cdk import RemovalPolicy
from constructs import Construct

ENVIRONMENTS = ("dev", "staging", "production")

_ENVIRONMENT_ALIASES = {
    "development": "dev",
    "prod": "production",
    "stage": "staging",
}

# Defaults that differ between environments. Anything not listed here
# falls back to the dataclass defaults.
_ENVIRONMENT_DEFAULTS: dict[str, dict] = {
    "dev": {
        "nat_gateways": 1,
        "aurora_reader_count": 0,
        "redis_node_type": "cache.t4g.medium",
        "mindsdb_min_capacity": 1,
    },
    "staging": {},
    "production": {
        "aurora_backup_retention_days": 30,
    },
}


class ConfigurationError(ValueError):
    """Raised when CDK context or environment variables describe an invalid deployment."""


def normalize_environment(value: str | None) -> str:
    """Map an environment name (or alias) to one of ENVIRONMENTS."""
    name = (value or "dev").strip().lower()
    name = _ENVIRONMENT_ALIASES.get(name, name)
    if name not in ENVIRONMENTS:
        raise ConfigurationError(
            f"Unknown environment '{value}'. Expected one of: {', '.join(ENVIRONMENTS)}"
        )
    return name


@dataclass(frozen=True)
class EnvironmentConfig:
    """Deployment settings shared by every stack of one environment."""

    environment: str
    account: str | None = None
    region: str = "us-east-1"
    resource_prefix: str = "mindsdb-rag"

    # Network
    vpc_max_azs: int = 3
    nat_gateways: int = 2

    # Aurora PostgreSQL
    aurora_instance_class: str = "r6g.large"
    aurora_reader_count: int = 1
    aurora_backup_retention_days: int = 7

    # ElastiCache Redis
    redis_node_type: str = "cache.r6g.large"

    # MindsDB on ECS Fargate
    mindsdb_image: str = "mindsdb/mindsdb:latest"
    mindsdb_min_capacity: int = 2
    mindsdb_max_capacity: int = 20

    # Alerting
    alert_email: str | None = None

    # Cognito hosted UI
    callback_urls: list[str] = field(
        default_factory=lambda: [
            "https://localhost:3000/callback",
            "https://app.mindsdb-rag.com/callback",
        ]
    )
    logout_urls: list[str] = field(
        default_factory=lambda: [
            "https://localhost:3000/logout",
            "https://app.mindsdb-rag.com/logout",
        ]
    )

    # Optional components
    enable_bedrock_agent: bool = False
    widget_domain_name: str | None = None
    widget_certificate_arn: str | None = None

    def __post_init__(self) -> None:
        if self.environment not in ENVIRONMENTS:
            raise ConfigurationError(f"Unknown environment '{self.environment}'")
        if self.vpc_max_azs < 2:
            raise ConfigurationError("vpc_max_azs must be at least 2 for Aurora subnet groups")
        if self.nat_gateways < 1:
            raise ConfigurationError("nat_gateways must be at least 1")
        if not 1 <= self.mindsdb_min_capacity <= self.mindsdb_max_capacity:
            raise ConfigurationError(
                "MindsDB capacity must satisfy 1 <= min_capacity <= max_capacity "
                f"(got {self.mindsdb_min_capacity}..{self.mindsdb_max_capacity})"
            )
        if self.aurora_reader_count < 0:
            raise ConfigurationError("aurora_reader_count cannot be negative")
        if bool(self.widget_domain_name) != bool(self.widget_certificate_arn):
            raise ConfigurationError(
                "widget_domain_name and widget_certificate_arn must be provided together"
            )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def removal_policy(self) -> RemovalPolicy:
        """Stateful resources are retained in production and destroyed elsewhere."""
        return RemovalPolicy.RETAIN if self.is_production else RemovalPolicy.DESTROY

    @property
    def deletion_protection(self) -> bool:
        return self.is_production

    @property
    def stack_name(self) -> str:
        return f"{self.resource_prefix}-{self.environment}"

    def name(self, suffix: str) -> str:
        """Build an environment-scoped resource name, e.g. ``mindsdb-rag-alerts-dev``."""
        return f"{self.resource_prefix}-{suffix}-{self.environment}"

    @classmethod
    def from_context(cls, scope: Construct) -> "EnvironmentConfig":
        """
        Resolve configuration from CDK context and environment variables.

        Raises:
            ConfigurationError: If any value is invalid.
        """
        node = scope.node

        def context(key: str):
            return node.try_get_context(key)

        environment = normalize_environment(
            context("environment") or os.environ.get("ENVIRONMENT")
        )

        values: dict = dict(_ENVIRONMENT_DEFAULTS[environment])
        values["account"] = context("account") or os.environ.get("CDK_DEFAULT_ACCOUNT")
        values["region"] = (
            context("region") or os.environ.get("CDK_DEFAULT_REGION") or "us-east-1"
        )
        values["alert_email"] = context("alert_email") or os.environ.get("ALERT_EMAIL")

        for key in (
            "resource_prefix",
            "mindsdb_image",
            "redis_node_type",
            "aurora_instance_class",
            "widget_domain_name",
            "widget_certificate_arn",
        ):
            if context(key):
                values[key] = context(key)

        for key in (
            "vpc_max_azs",
            "nat_gateways",
            "aurora_reader_count",
            "aurora_backup_retention_days",
            "mindsdb_min_capacity",
            "mindsdb_max_capacity",
        ):
            raw = context(key)
            if raw is not None:
                values[key] = _parse_int(key, raw)

        for key in ("callback_urls", "logout_urls"):
            raw = context(key)
            if raw:
                values[key] = _parse_list(raw)

        values["enable_bedrock_agent"] = _parse_bool(context("enable_bedrock_agent"))

        return cls(environment=environment, **values)


def _parse_int(key: str, raw) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Context value '{key}' must be an integer, got {raw!r}") from e


def _parse_bool(raw) -> bool:
    # --context values arrive as strings, cdk.json values as JSON booleans
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _parse_list(raw) -> list[str]:
    if isinstance(raw, list):
        return [str(item) for item in raw]
    return [item.strip() for item in str(raw).split(",") if item.strip()]
