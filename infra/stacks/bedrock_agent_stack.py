"""
Bedrock Agent - conversational orchestration over the MindsDB tools.

Only created when the ``enable_bedrock_agent`` context flag is set.

The agent has two action groups:
- MindsDBTools (tools Lambda): semantic retrieval and product prediction
- CheckoutTools (checkout Lambda): checkout processing

Action-group OpenAPI schemas are kept as Python dicts and serialized at synth time.
"""

import json

from aws_cdk import (
    CfnOutput,
    Stack,
)
from aws_cdk import (
    aws_bedrock as bedrock,
)
from aws_cdk import (
    aws_dynamodb as dynamodb,
)
from aws_cdk import (
    aws_iam as iam,
)
from aws_cdk import (
    aws_lambda as lambda_,
)
from constructs import Construct

from .config import EnvironmentConfig

FOUNDATION_MODEL = "amazon.nova-micro-v1:0"
ALLOWED_MODELS = [
    "amazon.nova-micro-v1:0",
    "amazon.nova-lite-v1:0",
    "amazon.nova-pro-v1:0",
]
IDLE_SESSION_TTL_SECONDS = 1800

_MERCHANT_ID_PROPERTY = {
    "type": "string",
    "description": "Merchant identifier for tenant isolation",
}

MINDSDB_TOOLS_SCHEMA = {
    "openapi": "3.0.0",
    "info": {
        "title": "MindsDB RAG Tools API",
        "version": "1.0.0",
        "description": "API for MindsDB semantic retrieval and product predictions",
    },
    "paths": {
        "/semantic-retrieval": {
            "post": {
                "summary": "Retrieve semantically similar documents",
                "operationId": "semanticRetrieval",
                "requestBody": {
                    "required": True,
                    "content": {
                        "application/json": {
                            "schema": {
                                "type": "object",
                                "properties": {
                                    "query": {
                                        "type": "string",
                                        "description": "User query for semantic search",
                                    },
                                    "merchant_id": _MERCHANT_ID_PROPERTY,
                                    "limit": {
                                        "type": "integer",
                                        "description": "Maximum number of results to return",
                                        "default": 5,
                                    },
                                },
                                "required": ["query", "merchant_id"],
                            }
                        }
                    },
                },
                "responses": {
                    "200": {
                        "description": "Successful retrieval",
                        "content": {
                            "application/json": {
                                "schema": {
                                    "type": "object",
                                    "properties": {
                                        "results": {
                                            "type": "array",
                                            "items": {
                                                "type": "object",
                                                "properties": {
                                                    "id": {"type": "string"},
                                                    "snippet": {"type": "string"},
                                                    "score": {"type": "number"},
                                                    "metadata": {"type": "object"},
                                                    "grounding_pass": {"type": "boolean"},
                                                },
                                            },
                                        }
                                    },
                                }
                            }
                        },
                    }
                },
            }
        },
        "/product-prediction": {
            "post": {
                "summary": "Generate product predictions with feature importance",
                "operationId": "productPrediction",
                "requestBody": {
                    "required": True,
                    "content": {
                        "application/json": {
                            "schema": {
                                "type": "object",
                                "properties": {
                                    "sku": {
                                        "type": "string",
                                        "description": "Product SKU for prediction",
                                    },
                                    "user_context": {
                                        "type": "object",
                                        "description": "User context for personalized predictions",
                                    },
                                    "merchant_id": _MERCHANT_ID_PROPERTY,
                                },
                                "required": ["sku", "merchant_id"],
                            }
                        }
                    },
                },
                "responses": {
                    "200": {
                        "description": "Successful prediction",
                        "content": {
                            "application/json": {
                                "schema": {
                                    "type": "object",
                                    "properties": {
                                        "sku": {"type": "string"},
                                        "demand_score": {"type": "number"},
                                        "purchase_probability": {"type": "number"},
                                        "explanation": {"type": "string"},
                                        "feature_importance": {"type": "object"},
                                        "confidence": {"type": "number"},
                                    },
                                }
                            }
                        },
                    }
                },
            }
        },
    },
}

CHECKOUT_TOOLS_SCHEMA = {
    "openapi": "3.0.0",
    "info": {
        "title": "Checkout API",
        "version": "1.0.0",
        "description": "API for secure checkout and payment processing",
    },
    "paths": {
        "/process-checkout": {
            "post": {
                "summary": "Process secure checkout",
                "operationId": "processCheckout",
                "requestBody": {
                    "required": True,
                    "content": {
                        "application/json": {
                            "schema": {
                                "type": "object",
                                "properties": {
                                    "merchant_id": _MERCHANT_ID_PROPERTY,
                                    "user_id": {"type": "string"},
                                    "items": {
                                        "type": "array",
                                        "items": {
                                            "type": "object",
                                            "properties": {
                                                "sku": {"type": "string"},
                                                "quantity": {"type": "integer"},
                                                "price": {"type": "number"},
                                            },
                                        },
                                    },
                                    "payment_method": {"type": "string"},
                                },
                                "required": ["merchant_id", "user_id", "items"],
                            }
                        }
                    },
                },
                "responses": {
                    "200": {
                        "description": "Successful checkout",
                        "content": {
                            "application/json": {
                                "schema": {
                                    "type": "object",
                                    "properties": {
                                        "transaction_id": {"type": "string"},
                                        "status": {"type": "string"},
                                        "total_amount": {"type": "number"},
                                    },
                                }
                            }
                        },
                    }
                },
            }
        }
    },
}

AGENT_INSTRUCTION = """You are an intelligent e-commerce assistant that helps customers discover products and complete purchases.

Your capabilities include:
1. Semantic search through product catalogs using MindsDB
2. Personalized product recommendations with explainable predictions
3. Secure checkout processing
4. Integration with Amazon Q for additional grounding

Key behaviors:
- Always maintain tenant isolation by including merchant_id in all operations
- Provide explanations for recommendations including feature importance
- Ground all factual claims in retrieved documents
- Limit product recommendations to 3 items maximum
- Explicitly state information limitations when documents don't contain sufficient data
- Ensure secure handling of payment information during checkout

When processing queries:
1. Parse user intent to determine required actions
2. Use semantic retrieval to find relevant product information
3. Generate predictions for identified products with explanations
4. Coordinate multiple tool invocations as needed
5. Provide grounded, helpful responses with source citations"""

PRE_PROCESSING_PROMPT = """You are processing a user query for an e-commerce assistant.

Extract the following information:
- User intent (search, recommend, purchase, question)
- Product-related keywords or SKUs
- User context (preferences, constraints)
- Required actions (retrieval, prediction, checkout)

Merchant ID: $merchant_id
User Query: $query

Respond with a structured plan for tool invocations."""

ORCHESTRATION_PROMPT = """You are coordinating multiple tools to fulfill a user request.

Available tools:
- semanticRetrieval: Find relevant documents
- productPrediction: Generate predictions with explanations
- processCheckout: Handle secure payments

Current context: $context
Tool results: $tool_results

Determine the next action or provide a final response."""

POST_PROCESSING_PROMPT = """Generate a helpful response based on the tool results.

Requirements:
- Ground all claims in retrieved documents
- Include source citations
- Limit recommendations to 3 items
- Provide explanations for predictions
- Use clear, conversational language

Tool Results: $tool_results
User Query: $query

Generate response:"""

# (prompt type, template, temperature, maximum length, stop sequences)
PROMPT_OVERRIDES = [
    ("PRE_PROCESSING", PRE_PROCESSING_PROMPT, 0.1, 2048, ["</plan>"]),
    ("ORCHESTRATION", ORCHESTRATION_PROMPT, 0.3, 4096, None),
    ("POST_PROCESSING", POST_PROCESSING_PROMPT, 0.7, 4096, None),
]


class BedrockAgentStack(Construct):
    """Bedrock Agent wired to the tools and checkout functions."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: EnvironmentConfig,
        session_table: dynamodb.ITable,
        tools_function: lambda_.IFunction,
        checkout_function: lambda_.IFunction,
    ) -> None:
        super().__init__(scope, construct_id)

        stack = Stack.of(self)

        # =================================================================
        # Agent Execution Role
        # =================================================================

        self.execution_role = iam.Role(
            self,
            "BedrockAgentExecutionRole",
            assumed_by=iam.ServicePrincipal("bedrock.amazonaws.com"),
            description="Execution role for Bedrock Agent to access MindsDB and other services",
        )

        self.execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=[
                    "bedrock:InvokeModel",
                    "bedrock:InvokeModelWithResponseStream",
                    "bedrock:GetFoundationModel",
                ],
                resources=[
                    f"arn:aws:bedrock:{stack.region}::foundation-model/{model}"
                    for model in ALLOWED_MODELS
                ],
            )
        )
        self.execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=[
                    "dynamodb:GetItem",
                    "dynamodb:PutItem",
                    "dynamodb:UpdateItem",
                    "dynamodb:DeleteItem",
                    "dynamodb:Query",
                ],
                resources=[session_table.table_arn, f"{session_table.table_arn}/index/*"],
            )
        )
        self.execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=["logs:CreateLogGroup", "logs:CreateLogStream", "logs:PutLogEvents"],
                resources=[
                    f"arn:aws:logs:{stack.region}:{stack.account}:log-group:/aws/bedrock/agent/*"
                ],
            )
        )
        self.execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=[
                    "elasticloadbalancing:DescribeTargetHealth",
                    "elasticloadbalancing:DescribeLoadBalancers",
                ],
                resources=["*"],
            )
        )
        self.execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=[
                    "qbusiness:ChatSync",
                    "qbusiness:GetApplication",
                    "qbusiness:ListApplications",
                ],
                resources=["*"],
            )
        )
        self.execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=["lambda:InvokeFunction"],
                resources=[tools_function.function_arn, checkout_function.function_arn],
            )
        )

        # =================================================================
        # Agent
        # =================================================================

        self.agent = bedrock.CfnAgent(
            self,
            "RAGAgent",
            agent_name=config.name("agent"),
            description="Intelligent e-commerce assistant with MindsDB RAG capabilities",
            foundation_model=FOUNDATION_MODEL,
            agent_resource_role_arn=self.execution_role.role_arn,
            instruction=AGENT_INSTRUCTION,
            idle_session_ttl_in_seconds=IDLE_SESSION_TTL_SECONDS,
            action_groups=[
                _action_group(
                    "MindsDBTools",
                    "Tools for interacting with MindsDB predictors and semantic retrieval",
                    tools_function,
                    MINDSDB_TOOLS_SCHEMA,
                ),
                _action_group(
                    "CheckoutTools",
                    "Tools for secure checkout and payment processing",
                    checkout_function,
                    CHECKOUT_TOOLS_SCHEMA,
                ),
            ],
            prompt_override_configuration=bedrock.CfnAgent.PromptOverrideConfigurationProperty(
                prompt_configurations=[
                    bedrock.CfnAgent.PromptConfigurationProperty(
                        prompt_type=prompt_type,
                        prompt_creation_mode="OVERRIDDEN",
                        prompt_state="ENABLED",
                        base_prompt_template=template,
                        inference_configuration=bedrock.CfnAgent.InferenceConfigurationProperty(
                            temperature=temperature,
                            top_p=0.9,
                            maximum_length=maximum_length,
                            stop_sequences=stop_sequences,
                        ),
                    )
                    for prompt_type, template, temperature, maximum_length, stop_sequences in PROMPT_OVERRIDES
                ]
            ),
        )

        # Resource-based permissions so Bedrock can call the action-group functions
        for construct_id_suffix, function in (
            ("Tools", tools_function),
            ("Checkout", checkout_function),
        ):
            function.add_permission(
                f"BedrockAgentInvoke{construct_id_suffix}",
                principal=iam.ServicePrincipal("bedrock.amazonaws.com"),
                action="lambda:InvokeFunction",
                source_account=stack.account,
                source_arn=self.agent.attr_agent_arn,
            )

        # =================================================================
        # Outputs
        # =================================================================

        CfnOutput(
            self,
            "BedrockAgentId",
            value=self.agent.attr_agent_id,
            description="Bedrock Agent ID",
        )

        CfnOutput(
            self,
            "BedrockAgentArn",
            value=self.agent.attr_agent_arn,
            description="Bedrock Agent ARN",
        )

        CfnOutput(
            self,
            "AgentExecutionRoleArn",
            value=self.execution_role.role_arn,
            description="Bedrock Agent execution role ARN",
        )


def _action_group(
    name: str, description: str, function: lambda_.IFunction, schema: dict
) -> bedrock.CfnAgent.AgentActionGroupProperty:
    return bedrock.CfnAgent.AgentActionGroupProperty(
        action_group_name=name,
        description=description,
        action_group_executor=bedrock.CfnAgent.ActionGroupExecutorProperty(
            lambda_=function.function_arn,
        ),
        api_schema=bedrock.CfnAgent.APISchemaProperty(payload=json.dumps(schema)),
    )
