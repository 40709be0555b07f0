"""
Lambda functions - Bedrock Agent tools and checkout processing.

Functions:
- BedrockToolsFunction: executes agent tools against MindsDB (semantic retrieval,
  product prediction, checkout, health check)
- CheckoutFunction: processes and cancels checkout transactions in the session table
- Health functions for both, exposed through API Gateway

All functions share one execution role, run in private subnets and bundle their
dependencies from requirements.txt.
"""

from pathlib import Path

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_dynamodb as dynamodb,
    aws_ec2 as ec2,
    aws_iam as iam,
    aws_kms as kms,
    aws_lambda as lambda_,
    aws_logs as logs,
    aws_s3 as s3,
)
from constructs import Construct

from .config import EnvironmentConfig

# Path to Lambda functions directory
FUNCTIONS_DIR = Path(__file__).parent.parent / "functions"

# Lambda runtime versions (centralized for easier upgrades)
PYTHON_RUNTIME = lambda_.Runtime.PYTHON_3_13

CHECKOUT_TRANSACTION_TTL_DAYS = 90


def create_python_lambda(
    scope: Construct,
    construct_id: str,
    *,
    function_name: str,
    handler: str,
    code_path: Path,
    role: iam.IRole,
    environment: dict[str, str],
    vpc: ec2.IVpc | None = None,
    security_groups: list[ec2.ISecurityGroup] | None = None,
    timeout_seconds: int = 30,
    memory_size: int = 256,
    description: str = "",
    dead_letter_queue_enabled: bool = False,
    log_retention: logs.RetentionDays = logs.RetentionDays.ONE_MONTH,
    removal_policy: RemovalPolicy | None = None,
) -> lambda_.Function:
    """
    Create a Python Lambda function with standard configuration.

    Centralizes common Lambda settings: VPC, bundling, logging.
    The role is granted write access to the function's own log group.
    """
    log_group = logs.LogGroup(
        scope,
        f"{construct_id}Logs",
        retention=log_retention,
        removal_policy=removal_policy,
    )
    log_group.grant_write(role)

    vpc_subnets = (
        ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS) if vpc else None
    )

    return lambda_.Function(
        scope,
        construct_id,
        function_name=function_name,
        runtime=PYTHON_RUNTIME,
        handler=handler,
        code=lambda_.Code.from_asset(
            str(code_path),
            exclude=["tests", "__pycache__", "*.pyc"],
            bundling={
                "image": PYTHON_RUNTIME.bundling_image,
                "command": [
                    "bash",
                    "-c",
                    "pip install -r requirements.txt -t /asset-output && cp -r . /asset-output/",
                ],
            },
        ),
        role=role,
        vpc=vpc,
        vpc_subnets=vpc_subnets,
        security_groups=security_groups,
        timeout=Duration.seconds(timeout_seconds),
        memory_size=memory_size,
        dead_letter_queue_enabled=dead_letter_queue_enabled,
        environment=environment,
        log_group=log_group,
        description=description,
    )


class LambdaFunctionsStack(Construct):
    """
    Tools and checkout Lambda functions for the RAG assistant.

    Exposes tools_function, tools_health_function, checkout_function,
    checkout_health_function and the shared execution role.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: EnvironmentConfig,
        vpc: ec2.IVpc,
        kms_key: kms.IKey,
        session_table: dynamodb.ITable,
        audit_bucket: s3.IBucket,
        mindsdb_endpoint: str,
    ) -> None:
        super().__init__(scope, construct_id)

        stack = Stack.of(self)
        prefix = config.resource_prefix

        # =================================================================
        # Shared Execution Role
        # =================================================================

        self.role = iam.Role(
            self,
            "LambdaExecutionRole",
            assumed_by=iam.ServicePrincipal("lambda.amazonaws.com"),
            description="Execution role for MindsDB RAG Lambda functions",
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AWSLambdaVPCAccessExecutionRole"
                ),
            ],
        )

        self.role.add_to_policy(
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
        self.role.add_to_policy(
            iam.PolicyStatement(
                actions=["secretsmanager:GetSecretValue"],
                resources=[
                    f"arn:aws:secretsmanager:{stack.region}:{stack.account}:secret:{prefix}/*"
                ],
            )
        )
        self.role.add_to_policy(
            iam.PolicyStatement(
                actions=["kms:Decrypt", "kms:GenerateDataKey"],
                resources=[kms_key.key_arn],
            )
        )
        self.role.add_to_policy(
            iam.PolicyStatement(
                actions=["s3:GetObject", "s3:PutObject"],
                resources=[audit_bucket.arn_for_objects("*")],
            )
        )

        # =================================================================
        # Security Group
        # =================================================================

        self.security_group = ec2.SecurityGroup(
            self,
            "LambdaSecurityGroup",
            vpc=vpc,
            description="Security group for MindsDB RAG Lambda functions",
            allow_all_outbound=True,
        )

        log_level = "DEBUG" if config.environment == "dev" else "INFO"
        common_environment = {
            "ENVIRONMENT": config.environment,
            "SESSION_TABLE_NAME": session_table.table_name,
            "MINDSDB_ENDPOINT": mindsdb_endpoint,
            "LOG_LEVEL": log_level,
        }

        # =================================================================
        # Bedrock Agent Tools
        # =================================================================

        self.tools_function = create_python_lambda(
            self,
            "BedrockToolsFunction",
            function_name=config.name("tools"),
            handler="handler.handler",
            code_path=FUNCTIONS_DIR / "bedrock-tools",
            role=self.role,
            vpc=vpc,
            security_groups=[self.security_group],
            timeout_seconds=300,
            memory_size=1024,
            dead_letter_queue_enabled=True,
            environment=common_environment,
            description="Executes Bedrock Agent tools against MindsDB",
            removal_policy=config.removal_policy,
        )

        self.tools_health_function = create_python_lambda(
            self,
            "BedrockToolsHealthFunction",
            function_name=config.name("tools-health"),
            handler="handler.health_handler",
            code_path=FUNCTIONS_DIR / "bedrock-tools",
            role=self.role,
            vpc=vpc,
            security_groups=[self.security_group],
            timeout_seconds=30,
            memory_size=512,
            environment=common_environment,
            description="Health check for the Bedrock tools function and MindsDB",
            log_retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=config.removal_policy,
        )

        # =================================================================
        # Checkout
        # =================================================================

        checkout_environment = {
            **common_environment,
            "TRANSACTION_TTL_DAYS": str(CHECKOUT_TRANSACTION_TTL_DAYS),
        }

        self.checkout_function = create_python_lambda(
            self,
            "CheckoutFunction",
            function_name=config.name("checkout"),
            handler="handler.handler",
            code_path=FUNCTIONS_DIR / "checkout",
            role=self.role,
            vpc=vpc,
            security_groups=[self.security_group],
            timeout_seconds=120,
            memory_size=512,
            dead_letter_queue_enabled=True,
            environment=checkout_environment,
            description="Processes and cancels checkout transactions",
            removal_policy=config.removal_policy,
        )

        self.checkout_health_function = create_python_lambda(
            self,
            "CheckoutHealthFunction",
            function_name=config.name("checkout-health"),
            handler="handler.health_handler",
            code_path=FUNCTIONS_DIR / "checkout",
            role=self.role,
            vpc=vpc,
            security_groups=[self.security_group],
            timeout_seconds=30,
            memory_size=256,
            environment=checkout_environment,
            description="Health check for the checkout function",
            log_retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=config.removal_policy,
        )

        # =================================================================
        # Outputs
        # =================================================================

        CfnOutput(
            self,
            "BedrockToolsFunctionArn",
            value=self.tools_function.function_arn,
            description="Bedrock Agent tools Lambda function ARN",
        )

        CfnOutput(
            self,
            "BedrockToolsFunctionName",
            value=self.tools_function.function_name,
            description="Bedrock Agent tools Lambda function name",
        )

        CfnOutput(
            self,
            "CheckoutFunctionArn",
            value=self.checkout_function.function_arn,
            description="Checkout Lambda function ARN",
        )

        CfnOutput(
            self,
            "CheckoutFunctionName",
            value=self.checkout_function.function_name,
            description="Checkout Lambda function name",
        )

    @property
    def functions(self) -> list[lambda_.Function]:
        return [
            self.tools_function,
            self.tools_health_function,
            self.checkout_function,
            self.checkout_health_function,
        ]
