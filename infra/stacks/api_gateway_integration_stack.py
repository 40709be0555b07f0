"""
API Gateway routes for the RAG assistant.

MindsDB routes are HTTP proxy integrations through the VPC link (API Gateway ->
internal NLB -> internal ALB -> MindsDB). Tool, document and checkout routes are
served by Lambda.

Route map:
    POST   /v1/chat                              MindsDB  /api/chat
    GET    /v1/chat/history                      MindsDB  /api/chat/history
    POST   /v1/documents                         tools Lambda (ingest_document)
    GET    /v1/documents/{id}/status             MindsDB  /api/documents/{id}/status
    POST   /v1/bedrock-agent/tools               tools Lambda
    GET    /v1/bedrock-agent/tools/openapi       MindsDB  (public)
    GET    /v1/bedrock-agent/config              MindsDB  (public)
    POST   /v1/checkout                          checkout Lambda
    POST   /v1/checkout/cancel                   checkout Lambda
    GET    /v1/checkout/{transactionId}/status   checkout Lambda
    GET    /v1/sessions/{sessionId}              MindsDB  /api/sessions/{sessionId}
    DELETE /v1/sessions/{sessionId}              MindsDB  /api/sessions/{sessionId}
    GET    /health                               tools health Lambda (public)
    GET    /v1/admin/metrics                     MindsDB  /api/admin/metrics
    GET    /v1/admin/merchants                   MindsDB  /api/admin/merchants
"""

from aws_cdk import (
    CfnOutput,
    Duration,
)
from aws_cdk import (
    aws_apigateway as apigateway,
)
from aws_cdk import (
    aws_lambda as lambda_,
)
from constructs import Construct

from .config import EnvironmentConfig

MERCHANT_HEADER = "method.request.header.X-Merchant-Id"
AUTHORIZATION_HEADER = "method.request.header.Authorization"

# Non-proxy Lambda integrations: the function returns {statusCode, headers, body};
# the response template lifts statusCode into the HTTP status and returns body as-is.
LAMBDA_ENVELOPE_RESPONSE_TEMPLATE = (
    "#set($inputRoot = $input.path('$'))\n"
    "#set($context.responseOverride.status = $inputRoot.statusCode)\n"
    "$inputRoot.body"
)

TOOLS_REQUEST_TEMPLATE = """{
  "toolName": $input.json('$.toolName'),
  "input": $input.json('$.input'),
  "context": {
    "merchant_id": "$context.authorizer.claims['custom:merchant_id']",
    "user_id": "$context.authorizer.claims.sub",
    "request_id": "$context.requestId",
    "timestamp": "$context.requestTimeEpoch"
  }
}"""

DOCUMENT_INGEST_REQUEST_TEMPLATE = """{
  "action": "ingest_document",
  "bucket": $input.json('$.bucket'),
  "key": $input.json('$.key'),
  "context": {
    "merchant_id": "$context.authorizer.claims['custom:merchant_id']",
    "user_id": "$context.authorizer.claims.sub",
    "request_id": "$context.requestId"
  }
}"""


class ApiGatewayIntegrationStack(Construct):
    """Adds every route, the API key and the usage plan to the shared REST API."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: EnvironmentConfig,
        api: apigateway.RestApi,
        authorizer: apigateway.IAuthorizer,
        vpc_link: apigateway.IVpcLink,
        mindsdb_endpoint: str,
        tools_function: lambda_.IFunction,
        tools_health_function: lambda_.IFunction,
        checkout_function: lambda_.IFunction,
    ) -> None:
        super().__init__(scope, construct_id)

        self._api = api
        self._authorizer = authorizer
        self._vpc_link = vpc_link
        self._mindsdb_endpoint = mindsdb_endpoint.rstrip("/")

        v1 = api.root.add_resource("v1")

        self._add_chat_routes(v1.add_resource("chat"))
        self._add_document_routes(v1.add_resource("documents"), tools_function)
        self._add_bedrock_agent_routes(v1.add_resource("bedrock-agent"), tools_function)
        self._add_checkout_routes(v1.add_resource("checkout"), checkout_function)
        self._add_session_routes(v1.add_resource("sessions"))
        self._add_admin_routes(v1.add_resource("admin"))

        # Public health check
        api.root.add_resource("health").add_method(
            "GET",
            apigateway.LambdaIntegration(tools_health_function),
            authorization_type=apigateway.AuthorizationType.NONE,
        )

        # =================================================================
        # API Key & Usage Plan
        # =================================================================

        self.api_key = apigateway.ApiKey(
            self,
            "MindsDBRAGApiKey",
            api_key_name=config.name("api-key"),
            description="API key for MindsDB RAG Assistant programmatic access",
        )

        self.usage_plan = apigateway.UsagePlan(
            self,
            "MindsDBRAGUsagePlan",
            name=config.name("usage-plan"),
            description="Usage plan for MindsDB RAG Assistant API",
            throttle=apigateway.ThrottleSettings(rate_limit=1000, burst_limit=2000),
            quota=apigateway.QuotaSettings(limit=1_000_000, period=apigateway.Period.MONTH),
            api_stages=[
                apigateway.UsagePlanPerApiStage(api=api, stage=api.deployment_stage),
            ],
        )
        self.usage_plan.add_api_key(self.api_key)

        # =================================================================
        # Outputs
        # =================================================================

        CfnOutput(
            self,
            "ApiKeyId",
            value=self.api_key.key_id,
            description="API Key ID for programmatic access",
        )

        CfnOutput(
            self,
            "UsagePlanId",
            value=self.usage_plan.usage_plan_id,
            description="Usage Plan ID",
        )

    # =====================================================================
    # Integration helpers
    # =====================================================================

    def _mindsdb_integration(
        self,
        path: str,
        http_method: str,
        *,
        request_parameters: dict[str, str] | None = None,
        timeout: Duration | None = None,
    ) -> apigateway.HttpIntegration:
        """HTTP proxy integration to MindsDB through the VPC link."""
        return apigateway.HttpIntegration(
            f"{self._mindsdb_endpoint}{path}",
            http_method=http_method,
            options=apigateway.IntegrationOptions(
                connection_type=apigateway.ConnectionType.VPC_LINK,
                vpc_link=self._vpc_link,
                timeout=timeout,
                request_parameters=request_parameters,
            ),
        )

    def _authorized(self, **kwargs) -> dict:
        return {
            "authorizer": self._authorizer,
            "authorization_type": apigateway.AuthorizationType.COGNITO,
            **kwargs,
        }

    def _lambda_envelope_integration(
        self, function: lambda_.IFunction, request_template: str
    ) -> apigateway.LambdaIntegration:
        return apigateway.LambdaIntegration(
            function,
            proxy=False,
            passthrough_behavior=apigateway.PassthroughBehavior.NEVER,
            request_templates={"application/json": request_template},
            integration_responses=[
                apigateway.IntegrationResponse(
                    status_code="200",
                    response_templates={"application/json": LAMBDA_ENVELOPE_RESPONSE_TEMPLATE},
                    response_parameters={
                        "method.response.header.Access-Control-Allow-Origin": "'*'",
                    },
                ),
            ],
        )

    # =====================================================================
    # Routes
    # =====================================================================

    def _add_chat_routes(self, chat: apigateway.Resource) -> None:
        validator = apigateway.RequestValidator(
            self,
            "ChatRequestValidator",
            rest_api=self._api,
            request_validator_name="chat-request-validator",
            validate_request_body=True,
            validate_request_parameters=True,
        )

        chat_model = apigateway.Model(
            self,
            "ChatRequestModel",
            rest_api=self._api,
            content_type="application/json",
            model_name="ChatRequest",
            description="Chat request model",
            schema=apigateway.JsonSchema(
                type=apigateway.JsonSchemaType.OBJECT,
                properties={
                    "message": apigateway.JsonSchema(
                        type=apigateway.JsonSchemaType.STRING,
                        min_length=1,
                        max_length=4000,
                    ),
                    "sessionId": apigateway.JsonSchema(
                        type=apigateway.JsonSchemaType.STRING,
                        pattern="^[a-zA-Z0-9-_]{1,100}$",
                    ),
                    "context": apigateway.JsonSchema(
                        type=apigateway.JsonSchemaType.OBJECT,
                        properties={
                            "previousMessages": apigateway.JsonSchema(
                                type=apigateway.JsonSchemaType.ARRAY,
                                max_items=10,
                            ),
                        },
                    ),
                },
                required=["message"],
            ),
        )

        chat.add_method(
            "POST",
            self._mindsdb_integration(
                "/api/chat",
                "POST",
                timeout=Duration.seconds(29),
                request_parameters={
                    "integration.request.header.X-Merchant-Id": MERCHANT_HEADER,
                    "integration.request.header.Authorization": AUTHORIZATION_HEADER,
                },
            ),
            **self._authorized(
                request_parameters={
                    MERCHANT_HEADER: True,
                    AUTHORIZATION_HEADER: True,
                },
                request_validator=validator,
                request_models={"application/json": chat_model},
            ),
        )

        chat.add_resource("history").add_method(
            "GET",
            self._mindsdb_integration(
                "/api/chat/history",
                "GET",
                request_parameters={
                    "integration.request.header.X-Merchant-Id": MERCHANT_HEADER,
                    "integration.request.header.Authorization": AUTHORIZATION_HEADER,
                    "integration.request.querystring.sessionId": "method.request.querystring.sessionId",
                    "integration.request.querystring.limit": "method.request.querystring.limit",
                },
            ),
            **self._authorized(
                request_parameters={
                    MERCHANT_HEADER: True,
                    AUTHORIZATION_HEADER: True,
                    "method.request.querystring.sessionId": False,
                    "method.request.querystring.limit": False,
                },
            ),
        )

    def _add_document_routes(
        self, documents: apigateway.Resource, tools_function: lambda_.IFunction
    ) -> None:
        validator = apigateway.RequestValidator(
            self,
            "DocumentIngestValidator",
            rest_api=self._api,
            request_validator_name="document-ingest-validator",
            validate_request_body=True,
        )

        ingest_model = apigateway.Model(
            self,
            "DocumentIngestModel",
            rest_api=self._api,
            content_type="application/json",
            model_name="DocumentIngest",
            schema=apigateway.JsonSchema(
                type=apigateway.JsonSchemaType.OBJECT,
                properties={
                    "bucket": apigateway.JsonSchema(
                        type=apigateway.JsonSchemaType.STRING,
                        min_length=3,
                        max_length=63,
                    ),
                    "key": apigateway.JsonSchema(
                        type=apigateway.JsonSchemaType.STRING,
                        min_length=1,
                        max_length=1024,
                    ),
                },
                required=["bucket", "key"],
            ),
        )

        documents.add_method(
            "POST",
            self._lambda_envelope_integration(tools_function, DOCUMENT_INGEST_REQUEST_TEMPLATE),
            **self._authorized(
                request_validator=validator,
                request_models={"application/json": ingest_model},
                method_responses=[_cors_method_response("200")],
            ),
        )

        documents.add_resource("{id}").add_resource("status").add_method(
            "GET",
            self._mindsdb_integration(
                "/api/documents/{id}/status",
                "GET",
                request_parameters={
                    "integration.request.path.id": "method.request.path.id",
                    "integration.request.header.X-Merchant-Id": MERCHANT_HEADER,
                },
            ),
            **self._authorized(
                request_parameters={
                    "method.request.path.id": True,
                    MERCHANT_HEADER: True,
                },
            ),
        )

    def _add_bedrock_agent_routes(
        self, bedrock_agent: apigateway.Resource, tools_function: lambda_.IFunction
    ) -> None:
        tools = bedrock_agent.add_resource("tools")
        tools.add_method(
            "POST",
            self._lambda_envelope_integration(tools_function, TOOLS_REQUEST_TEMPLATE),
            **self._authorized(method_responses=[_cors_method_response("200")]),
        )

        # Agent bootstrap documents are public
        tools.add_resource("openapi").add_method(
            "GET",
            self._mindsdb_integration("/api/bedrock-agent/tools/openapi", "GET"),
            authorization_type=apigateway.AuthorizationType.NONE,
        )

        bedrock_agent.add_resource("config").add_method(
            "GET",
            self._mindsdb_integration("/api/bedrock-agent/config", "GET"),
            authorization_type=apigateway.AuthorizationType.NONE,
        )

    def _add_checkout_routes(
        self, checkout: apigateway.Resource, checkout_function: lambda_.IFunction
    ) -> None:
        integration = apigateway.LambdaIntegration(checkout_function)

        checkout.add_method("POST", integration, **self._authorized())
        checkout.add_resource("cancel").add_method("POST", integration, **self._authorized())
        checkout.add_resource("{transactionId}").add_resource("status").add_method(
            "GET",
            integration,
            **self._authorized(
                request_parameters={"method.request.path.transactionId": True},
            ),
        )

    def _add_session_routes(self, sessions: apigateway.Resource) -> None:
        session = sessions.add_resource("{sessionId}")
        request_parameters = {
            "integration.request.path.sessionId": "method.request.path.sessionId",
            "integration.request.header.X-Merchant-Id": MERCHANT_HEADER,
        }

        for http_method in ("GET", "DELETE"):
            session.add_method(
                http_method,
                self._mindsdb_integration(
                    "/api/sessions/{sessionId}",
                    http_method,
                    request_parameters=request_parameters,
                ),
                **self._authorized(
                    request_parameters={
                        "method.request.path.sessionId": True,
                        MERCHANT_HEADER: True,
                    },
                ),
            )

    def _add_admin_routes(self, admin: apigateway.Resource) -> None:
        # Role checks for platform admins happen in MindsDB using the forwarded token
        for name in ("metrics", "merchants"):
            admin.add_resource(name).add_method(
                "GET",
                self._mindsdb_integration(
                    f"/api/admin/{name}",
                    "GET",
                    request_parameters={
                        "integration.request.header.Authorization": AUTHORIZATION_HEADER,
                    },
                ),
                **self._authorized(request_parameters={AUTHORIZATION_HEADER: True}),
            )


def _cors_method_response(status_code: str) -> apigateway.MethodResponse:
    return apigateway.MethodResponse(
        status_code=status_code,
        response_parameters={"method.response.header.Access-Control-Allow-Origin": True},
    )
