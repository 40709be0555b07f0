#!/usr/bin/env python3
"""
AWS CDK app entry point for MindsDB RAG Assistant infrastructure.

Usage:
    cdk synth --context environment=dev
    cdk deploy --all --context environment=production --context alert_email=ops@example.com
"""

import sys

import aws_cdk as cdk

from stacks.config import ConfigurationError, EnvironmentConfig
from stacks.logging import bind_deployment_context, configure_logging, get_logger
from stacks.mindsdb_rag_stack import MindsDBRAGStack
from stacks.validation import add_validation_aspects
from stacks.widget_cdn_stack import WidgetCdnStack

app = cdk.App()

configure_logging(
    json_format=app.node.try_get_context("log_format") == "json",
    log_level=app.node.try_get_context("log_level") or "INFO",
)
logger = get_logger("mindsdb_rag.app")

try:
    config = EnvironmentConfig.from_context(app)
except ConfigurationError as e:
    logger.error("invalid_configuration", error=str(e))
    sys.exit(1)

bind_deployment_context(config)
logger.info(
    "configuration_resolved",
    bedrock_agent=config.enable_bedrock_agent,
    mindsdb_capacity=f"{config.mindsdb_min_capacity}-{config.mindsdb_max_capacity}",
)

# Environment configuration
env = cdk.Environment(account=config.account, region=config.region)

tags = {
    "Environment": config.environment,
    "Project": "MindsDB-RAG-Assistant",
    "ManagedBy": "CDK",
}

# Core stack: networking, data stores, MindsDB service, API, monitoring
MindsDBRAGStack(
    app,
    config.stack_name,
    config=config,
    env=env,
    description=f"MindsDB RAG Assistant infrastructure ({config.environment})",
    tags=tags,
)

# Widget distribution
WidgetCdnStack(
    app,
    config.name("widget"),
    config=config,
    env=env,
    description=f"MindsDB RAG Assistant widget CDN ({config.environment})",
)

if not config.alert_email:
    logger.warning("alert_email_not_configured")

add_validation_aspects(app, is_production=config.is_production)

logger.info("synthesizing", stacks=[config.stack_name, config.name("widget")])
app.synth()
