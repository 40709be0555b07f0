"""CDK Stacks for MindsDB RAG Assistant infrastructure."""

from .api_gateway_integration_stack import ApiGatewayIntegrationStack
from .auth_security_stack import AuthSecurityStack
from .bedrock_agent_stack import BedrockAgentStack
from .lambda_functions_stack import LambdaFunctionsStack
from .mindsdb_rag_stack import MindsDBRAGStack
from .mindsdb_service import MindsDBService
from .monitoring_alerting_stack import MonitoringAlertingStack
from .widget_cdn_stack import WidgetCdnStack

__all__ = [
    "ApiGatewayIntegrationStack",
    "AuthSecurityStack",
    "BedrockAgentStack",
    "LambdaFunctionsStack",
    "MindsDBRAGStack",
    "MindsDBService",
    "MonitoringAlertingStack",
    "WidgetCdnStack",
]
