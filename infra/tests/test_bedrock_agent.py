"""
Tests for the optional Bedrock agent.
"""

import json

from aws_cdk.assertions import Match, Template
from conftest import load_handler

from stacks.bedrock_agent_stack import (
    CHECKOUT_TOOLS_SCHEMA,
    FOUNDATION_MODEL,
    IDLE_SESSION_TTL_SECONDS,
    MINDSDB_TOOLS_SCHEMA,
)


def _agent(template: Template) -> dict:
    (agent,) = template.find_resources("AWS::Bedrock::Agent").values()
    return agent["Properties"]


class TestAgent:
    """Tests for the CfnAgent resource."""

    def test_agent_configuration(self, production_template: Template):
        props = _agent(production_template)

        assert props["AgentName"] == "mindsdb-rag-agent-production"
        assert props["FoundationModel"] == FOUNDATION_MODEL == "amazon.nova-micro-v1:0"
        assert props["IdleSessionTTLInSeconds"] == IDLE_SESSION_TTL_SECONDS == 1800
        assert props["Instruction"].startswith("You are an intelligent e-commerce assistant")

    def test_action_groups_serialize_schemas(self, production_template: Template):
        action_groups = _agent(production_template)["ActionGroups"]
        groups = {group["ActionGroupName"]: group for group in action_groups}

        assert set(groups) == {"MindsDBTools", "CheckoutTools"}
        assert json.loads(groups["MindsDBTools"]["ApiSchema"]["Payload"]) == MINDSDB_TOOLS_SCHEMA
        assert json.loads(groups["CheckoutTools"]["ApiSchema"]["Payload"]) == CHECKOUT_TOOLS_SCHEMA
        for group in groups.values():
            assert "Lambda" in group["ActionGroupExecutor"]

    def test_prompt_overrides(self, production_template: Template):
        configurations = _agent(production_template)["PromptOverrideConfiguration"][
            "PromptConfigurations"
        ]

        assert {config["PromptType"] for config in configurations} == {
            "PRE_PROCESSING",
            "ORCHESTRATION",
            "POST_PROCESSING",
        }
        for config in configurations:
            assert config["PromptCreationMode"] == "OVERRIDDEN"
            assert config["PromptState"] == "ENABLED"

    def test_bedrock_may_invoke_both_functions(self, production_template: Template):
        permissions = production_template.find_resources(
            "AWS::Lambda::Permission",
            {"Properties": {"Principal": "bedrock.amazonaws.com"}},
        )
        assert len(permissions) == 2

    def test_execution_role_limited_to_nova_models(self, production_template: Template):
        production_template.has_resource_properties(
            "AWS::IAM::Policy",
            {
                "PolicyDocument": {
                    "Statement": Match.array_with(
                        [
                            Match.object_like(
                                {
                                    "Action": [
                                        "bedrock:InvokeModel",
                                        "bedrock:InvokeModelWithResponseStream",
                                        "bedrock:GetFoundationModel",
                                    ],
                                    "Resource": [
                                        "arn:aws:bedrock:us-east-1::foundation-model/"
                                        "amazon.nova-micro-v1:0",
                                        "arn:aws:bedrock:us-east-1::foundation-model/"
                                        "amazon.nova-lite-v1:0",
                                        "arn:aws:bedrock:us-east-1::foundation-model/"
                                        "amazon.nova-pro-v1:0",
                                    ],
                                }
                            )
                        ]
                    )
                }
            },
        )

    def test_outputs(self, production_template: Template):
        names = " ".join(production_template.find_outputs("*"))

        for output in ("BedrockAgentId", "BedrockAgentArn", "AgentExecutionRoleArn"):
            assert output in names


class TestSchemasMatchHandlers:
    """The agent's API paths must be routable by the Lambda handlers."""

    def test_tools_paths_known_to_tools_handler(self):
        tools = load_handler("bedrock-tools")

        assert set(MINDSDB_TOOLS_SCHEMA["paths"]) <= set(tools.AGENT_API_PATHS)

    def test_checkout_paths_known_to_checkout_handler(self):
        checkout = load_handler("checkout")

        assert set(CHECKOUT_TOOLS_SCHEMA["paths"]) <= set(checkout.AGENT_API_PATHS)
