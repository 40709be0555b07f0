"""
Shared pytest fixtures for infrastructure tests.

Stacks are synthesized with Docker bundling disabled
(``aws:cdk:bundling-stacks`` is empty), so Lambda assets point at the
source directories and tests run without Docker.

Lambda handlers are plain files under ``infra/functions/<name>/handler.py``;
use ``load_handler`` to import one with the environment variables it reads
at import time already set.
"""

import importlib.util
from pathlib import Path

import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Template

from stacks.config import EnvironmentConfig
from stacks.mindsdb_rag_stack import MindsDBRAGStack

FUNCTIONS_DIR = Path(__file__).parent.parent / "functions"

TEST_ACCOUNT = "123456789012"
TEST_REGION = "us-east-1"
TEST_ENV = cdk.Environment(account=TEST_ACCOUNT, region=TEST_REGION)


def make_app(**context) -> cdk.App:
    """Create an app with bundling disabled and deterministic availability zones."""
    return cdk.App(
        context={
            "aws:cdk:bundling-stacks": [],
            f"availability-zones:account={TEST_ACCOUNT}:region={TEST_REGION}": [
                f"{TEST_REGION}a",
                f"{TEST_REGION}b",
                f"{TEST_REGION}c",
            ],
            "account": TEST_ACCOUNT,
            "region": TEST_REGION,
            **context,
        }
    )


def make_config(app: cdk.App) -> EnvironmentConfig:
    return EnvironmentConfig.from_context(app)


def synth_rag_stack(**context) -> MindsDBRAGStack:
    app = make_app(**context)
    config = make_config(app)
    return MindsDBRAGStack(app, config.stack_name, config=config, env=TEST_ENV)


def load_handler(function_dir: str, module_name: str | None = None):
    """Import ``infra/functions/<function_dir>/handler.py`` as a fresh module."""
    path = FUNCTIONS_DIR / function_dir / "handler.py"
    name = module_name or f"{function_dir.replace('-', '_')}_handler"
    spec = importlib.util.spec_from_file_location(name, path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's shell from leaking into configuration resolution."""
    for name in ("ENVIRONMENT", "ALERT_EMAIL", "CDK_DEFAULT_ACCOUNT", "CDK_DEFAULT_REGION"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(scope="session")
def dev_stack() -> MindsDBRAGStack:
    """Dev environment stack with the Bedrock agent disabled."""
    return synth_rag_stack(environment="dev")


@pytest.fixture(scope="session")
def dev_template(dev_stack) -> Template:
    return Template.from_stack(dev_stack)


@pytest.fixture(scope="session")
def production_stack() -> MindsDBRAGStack:
    """Production stack with the Bedrock agent and alert email enabled."""
    return synth_rag_stack(
        environment="production",
        enable_bedrock_agent="true",
        alert_email="ops@example.com",
    )


@pytest.fixture(scope="session")
def production_template(production_stack) -> Template:
    return Template.from_stack(production_stack)
