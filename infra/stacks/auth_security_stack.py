"""
Authentication and edge security - Cognito, WAF and the REST API.

Creates:
- Cognito user pool, web client and identity pool with role mapping on custom:user_role
- Regional WAF WebACL (rules in waf_rules.py) with logging, associated with the API stage
- REST API with throttling, CORS and a Cognito authorizer

Routes are added to the API by ApiGatewayIntegrationStack.
"""

from aws_cdk import (
    CfnOutput,
    Duration,
    Stack,
)
from aws_cdk import (
    aws_apigateway as apigateway,
)
from aws_cdk import (
    aws_cognito as cognito,
)
from aws_cdk import (
    aws_iam as iam,
)
from aws_cdk import (
    aws_logs as logs,
)
from aws_cdk import (
    aws_wafv2 as wafv2,
)
from constructs import Construct

from .config import EnvironmentConfig
from .waf_rules import build_api_rules, build_visibility_config

CORS_ALLOW_HEADERS = [
    "Content-Type",
    "X-Amz-Date",
    "Authorization",
    "X-Api-Key",
    "X-Amz-Security-Token",
    "X-Merchant-Id",
]

USER_ROLE_CLAIM = "custom:user_role"

# Paths customers may invoke, as (method, path) pairs
CUSTOMER_ROUTES = [
    ("POST", "/v1/chat"),
    ("GET", "/v1/chat/history"),
    ("GET", "/v1/sessions/*"),
    ("POST", "/v1/checkout"),
    ("POST", "/v1/checkout/cancel"),
    ("GET", "/v1/checkout/*/status"),
]


class AuthSecurityStack(Construct):
    """
    Cognito, WAF and the REST API shared by all routes.

    Exposes user_pool, user_pool_client, identity_pool, web_acl, api and authorizer.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: EnvironmentConfig,
    ) -> None:
        super().__init__(scope, construct_id)

        self._config = config

        self.user_pool = self._create_user_pool()
        self.user_pool_client = self._create_user_pool_client()
        self.identity_pool = self._create_identity_pool()
        self.web_acl = self._create_web_acl()
        self.api = self._create_rest_api()

        # =================================================================
        # Cognito Authorizer
        # =================================================================

        self.authorizer = apigateway.CognitoUserPoolsAuthorizer(
            self,
            "CognitoAuthorizer",
            cognito_user_pools=[self.user_pool],
            authorizer_name="MindsDBRAGAuthorizer",
            identity_source="method.request.header.Authorization",
            results_cache_ttl=Duration.minutes(5),
        )

        # =================================================================
        # WAF Association
        # =================================================================

        waf_association = wafv2.CfnWebACLAssociation(
            self,
            "ApiGatewayWafAssociation",
            resource_arn=self.api.deployment_stage.stage_arn,
            web_acl_arn=self.web_acl.attr_arn,
        )
        # The stage ARN is assembled from names, so the stage must exist first
        waf_association.node.add_dependency(self.api.deployment_stage)

        self._create_identity_pool_roles()

        # =================================================================
        # Outputs
        # =================================================================

        CfnOutput(
            self,
            "UserPoolId",
            value=self.user_pool.user_pool_id,
            description="Cognito User Pool ID",
        )

        CfnOutput(
            self,
            "UserPoolClientId",
            value=self.user_pool_client.user_pool_client_id,
            description="Cognito User Pool Client ID",
        )

        CfnOutput(
            self,
            "IdentityPoolId",
            value=self.identity_pool.ref,
            description="Cognito Identity Pool ID",
        )

        CfnOutput(
            self,
            "ApiGatewayUrl",
            value=self.api.url,
            description="API Gateway URL",
        )

        CfnOutput(
            self,
            "WebACLArn",
            value=self.web_acl.attr_arn,
            description="WAF Web ACL ARN",
        )

    def _create_user_pool(self) -> cognito.UserPool:
        return cognito.UserPool(
            self,
            "UserPool",
            user_pool_name=self._config.name("users"),
            self_sign_up_enabled=True,
            sign_in_aliases=cognito.SignInAliases(email=True, username=True),
            auto_verify=cognito.AutoVerifiedAttrs(email=True),
            standard_attributes=cognito.StandardAttributes(
                email=cognito.StandardAttribute(required=True, mutable=True),
                given_name=cognito.StandardAttribute(required=True, mutable=True),
                family_name=cognito.StandardAttribute(required=True, mutable=True),
            ),
            custom_attributes={
                "merchant_id": cognito.StringAttribute(mutable=True),
                "user_role": cognito.StringAttribute(mutable=True),
            },
            password_policy=cognito.PasswordPolicy(
                min_length=12,
                require_lowercase=True,
                require_uppercase=True,
                require_digits=True,
                require_symbols=True,
                temp_password_validity=Duration.days(1),
            ),
            account_recovery=cognito.AccountRecovery.EMAIL_ONLY,
            mfa=cognito.Mfa.OPTIONAL,
            mfa_second_factor=cognito.MfaSecondFactor(sms=True, otp=True),
            user_verification=cognito.UserVerificationConfig(
                email_subject="Verify your email for MindsDB RAG Assistant",
                email_body="Thank you for signing up! Your verification code is {####}",
                email_style=cognito.VerificationEmailStyle.CODE,
            ),
            user_invitation=cognito.UserInvitationConfig(
                email_subject="Invite to join MindsDB RAG Assistant",
                email_body=(
                    "Hello {username}, you have been invited to join MindsDB RAG Assistant. "
                    "Your temporary password is {####}"
                ),
            ),
            device_tracking=cognito.DeviceTracking(
                challenge_required_on_new_device=True,
                device_only_remembered_on_user_prompt=False,
            ),
            removal_policy=self._config.removal_policy,
        )

    def _create_user_pool_client(self) -> cognito.UserPoolClient:
        return cognito.UserPoolClient(
            self,
            "UserPoolClient",
            user_pool=self.user_pool,
            user_pool_client_name=f"{self._config.resource_prefix}-web-client",
            generate_secret=False,
            auth_flows=cognito.AuthFlow(
                user_srp=True,
                user_password=False,
                admin_user_password=False,
            ),
            o_auth=cognito.OAuthSettings(
                flows=cognito.OAuthFlows(
                    authorization_code_grant=True,
                    implicit_code_grant=False,
                ),
                scopes=[
                    cognito.OAuthScope.EMAIL,
                    cognito.OAuthScope.OPENID,
                    cognito.OAuthScope.PROFILE,
                ],
                callback_urls=list(self._config.callback_urls),
                logout_urls=list(self._config.logout_urls),
            ),
            prevent_user_existence_errors=True,
            refresh_token_validity=Duration.days(30),
            access_token_validity=Duration.hours(1),
            id_token_validity=Duration.hours(1),
            enable_token_revocation=True,
        )

    def _create_identity_pool(self) -> cognito.CfnIdentityPool:
        return cognito.CfnIdentityPool(
            self,
            "IdentityPool",
            identity_pool_name=self._config.name("identity-pool"),
            allow_unauthenticated_identities=False,
            cognito_identity_providers=[
                cognito.CfnIdentityPool.CognitoIdentityProviderProperty(
                    client_id=self.user_pool_client.user_pool_client_id,
                    provider_name=self.user_pool.user_pool_provider_name,
                    server_side_token_check=True,
                )
            ],
        )

    def _create_web_acl(self) -> wafv2.CfnWebACL:
        config = self._config

        web_acl = wafv2.CfnWebACL(
            self,
            "WebACL",
            name=config.name("waf"),
            scope="REGIONAL",
            default_action=wafv2.CfnWebACL.DefaultActionProperty(allow={}),
            description="WAF for MindsDB RAG Assistant API",
            rules=build_api_rules(),
            visibility_config=build_visibility_config("MindsDBRAGWebACL"),
        )

        # WAF requires log group names starting with aws-waf-logs-
        waf_log_group = logs.LogGroup(
            self,
            "WafLogGroup",
            log_group_name=f"aws-waf-logs-{config.resource_prefix}-{config.environment}",
            retention=logs.RetentionDays.ONE_MONTH,
            removal_policy=config.removal_policy,
        )

        wafv2.CfnLoggingConfiguration(
            self,
            "WafLogging",
            resource_arn=web_acl.attr_arn,
            log_destination_configs=[waf_log_group.log_group_arn],
            redacted_fields=[
                wafv2.CfnLoggingConfiguration.FieldToMatchProperty(
                    single_header={"Name": "authorization"},
                ),
                wafv2.CfnLoggingConfiguration.FieldToMatchProperty(
                    single_header={"Name": "cookie"},
                ),
            ],
        )

        return web_acl

    def _create_rest_api(self) -> apigateway.RestApi:
        config = self._config

        return apigateway.RestApi(
            self,
            "ApiGateway",
            rest_api_name=config.name("api"),
            description="MindsDB RAG Assistant API Gateway",
            cloud_watch_role=True,
            deploy_options=apigateway.StageOptions(
                stage_name=config.environment,
                throttling_rate_limit=1000,
                throttling_burst_limit=2000,
                logging_level=apigateway.MethodLoggingLevel.INFO,
                # Request/response bodies may carry customer PII
                data_trace_enabled=not config.is_production,
                metrics_enabled=True,
            ),
            default_cors_preflight_options=apigateway.CorsOptions(
                allow_origins=apigateway.Cors.ALL_ORIGINS,
                allow_methods=apigateway.Cors.ALL_METHODS,
                allow_headers=CORS_ALLOW_HEADERS,
            ),
            policy=iam.PolicyDocument(
                statements=[
                    iam.PolicyStatement(
                        principals=[iam.AnyPrincipal()],
                        actions=["execute-api:Invoke"],
                        resources=["execute-api:/*"],
                    )
                ]
            ),
            binary_media_types=["*/*"],
        )

    def _create_identity_pool_roles(self) -> None:
        """IAM roles assumed through the identity pool, selected by custom:user_role."""

        def federated_principal() -> iam.FederatedPrincipal:
            return iam.FederatedPrincipal(
                "cognito-identity.amazonaws.com",
                conditions={
                    "StringEquals": {
                        "cognito-identity.amazonaws.com:aud": self.identity_pool.ref,
                    },
                    "ForAnyValue:StringLike": {
                        "cognito-identity.amazonaws.com:amr": "authenticated",
                    },
                },
                assume_role_action="sts:AssumeRoleWithWebIdentity",
            )

        customer_role = iam.Role(
            self,
            "AuthenticatedUserRole",
            assumed_by=federated_principal(),
            description="Role for authenticated users (customers)",
        )
        customer_role.add_to_policy(
            iam.PolicyStatement(
                actions=["execute-api:Invoke"],
                resources=[
                    self.api.arn_for_execute_api(method, path, "*")
                    for method, path in CUSTOMER_ROUTES
                ],
            )
        )

        merchant_admin_role = iam.Role(
            self,
            "MerchantAdminRole",
            assumed_by=federated_principal(),
            description="Role for merchant administrators",
        )
        merchant_admin_role.add_to_policy(
            iam.PolicyStatement(
                actions=["execute-api:Invoke"],
                resources=[self.api.arn_for_execute_api("*", "/*", "*")],
            )
        )

        platform_admin_role = iam.Role(
            self,
            "PlatformAdminRole",
            assumed_by=federated_principal(),
            description="Role for platform administrators",
        )
        platform_admin_role.add_to_policy(
            iam.PolicyStatement(
                actions=["execute-api:Invoke"],
                resources=[self.api.arn_for_execute_api("*", "/*", "*")],
            )
        )
        platform_admin_role.add_to_policy(
            iam.PolicyStatement(
                actions=[
                    "cloudwatch:GetMetricData",
                    "cloudwatch:GetMetricStatistics",
                    "cloudwatch:ListMetrics",
                    "cloudwatch:DescribeAlarms",
                    "cloudwatch:GetDashboard",
                    "logs:FilterLogEvents",
                    "logs:GetLogEvents",
                    "logs:StartQuery",
                    "logs:GetQueryResults",
                ],
                resources=["*"],
            )
        )

        role_rules = [
            ("platform_admin", platform_admin_role),
            ("merchant_admin", merchant_admin_role),
            ("customer", customer_role),
        ]

        cognito.CfnIdentityPoolRoleAttachment(
            self,
            "IdentityPoolRoleAttachment",
            identity_pool_id=self.identity_pool.ref,
            roles={"authenticated": customer_role.role_arn},
            role_mappings={
                "cognitoProvider": cognito.CfnIdentityPoolRoleAttachment.RoleMappingProperty(
                    type="Rules",
                    ambiguous_role_resolution="AuthenticatedRole",
                    identity_provider=(
                        f"{self.user_pool.user_pool_provider_name}:"
                        f"{self.user_pool_client.user_pool_client_id}"
                    ),
                    rules_configuration=cognito.CfnIdentityPoolRoleAttachment.RulesConfigurationTypeProperty(
                        rules=[
                            cognito.CfnIdentityPoolRoleAttachment.MappingRuleProperty(
                                claim=USER_ROLE_CLAIM,
                                match_type="Equals",
                                value=value,
                                role_arn=role.role_arn,
                            )
                            for value, role in role_rules
                        ]
                    ),
                )
            },
        )

        self.customer_role = customer_role
        self.merchant_admin_role = merchant_admin_role
        self.platform_admin_role = platform_admin_role
