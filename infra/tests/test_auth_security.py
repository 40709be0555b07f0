"""
Tests for Cognito, WAF and the REST API.
"""

from aws_cdk.assertions import Match, Template

from stacks.waf_rules import (
    IP_RATE_LIMIT,
    MERCHANT_HEADER,
    MERCHANT_RATE_LIMIT,
    build_api_rules,
)


def _rule_by_name(rules, name: str) -> dict:
    return next(rule for rule in rules if rule["Name"] == name)


class TestCognito:
    """Tests for the user pool, client and identity pool."""

    def test_user_pool(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::Cognito::UserPool",
            {
                "UserPoolName": "mindsdb-rag-users-dev",
                "AutoVerifiedAttributes": ["email"],
                "MfaConfiguration": "OPTIONAL",
                "EnabledMfas": Match.array_with(["SMS_MFA", "SOFTWARE_TOKEN_MFA"]),
                "Policies": {
                    "PasswordPolicy": Match.object_like(
                        {
                            "MinimumLength": 12,
                            "RequireLowercase": True,
                            "RequireUppercase": True,
                            "RequireNumbers": True,
                            "RequireSymbols": True,
                            "TemporaryPasswordValidityDays": 1,
                        }
                    )
                },
                "AccountRecoverySetting": {
                    "RecoveryMechanisms": [{"Name": "verified_email", "Priority": 1}]
                },
                "AdminCreateUserConfig": Match.object_like({"AllowAdminCreateUserOnly": False}),
                "DeviceConfiguration": {
                    "ChallengeRequiredOnNewDevice": True,
                    "DeviceOnlyRememberedOnUserPrompt": False,
                },
            },
        )

    def test_user_pool_custom_attributes(self, dev_template: Template):
        (pool,) = dev_template.find_resources("AWS::Cognito::UserPool").values()
        attribute_names = {attribute["Name"] for attribute in pool["Properties"]["Schema"]}

        assert {
            "email",
            "given_name",
            "family_name",
            "merchant_id",
            "user_role",
        } <= attribute_names

    def test_web_client(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::Cognito::UserPoolClient",
            {
                "ClientName": "mindsdb-rag-web-client",
                "GenerateSecret": False,
                "ExplicitAuthFlows": ["ALLOW_USER_SRP_AUTH", "ALLOW_REFRESH_TOKEN_AUTH"],
                "AllowedOAuthFlows": ["code"],
                "AllowedOAuthScopes": ["email", "openid", "profile"],
                "PreventUserExistenceErrors": "ENABLED",
                "EnableTokenRevocation": True,
                "CallbackURLs": [
                    "https://localhost:3000/callback",
                    "https://app.mindsdb-rag.com/callback",
                ],
            },
        )

    def test_identity_pool_requires_authentication(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::Cognito::IdentityPool",
            {
                "AllowUnauthenticatedIdentities": False,
                "CognitoIdentityProviders": [
                    Match.object_like({"ServerSideTokenCheck": True}),
                ],
            },
        )

    def test_role_mapping_on_user_role_claim(self, dev_template: Template):
        (attachment,) = dev_template.find_resources(
            "AWS::Cognito::IdentityPoolRoleAttachment"
        ).values()
        (mapping,) = attachment["Properties"]["RoleMappings"].values()
        rules = mapping["RulesConfiguration"]["Rules"]

        assert mapping["Type"] == "Rules"
        assert {rule["Value"] for rule in rules} == {
            "platform_admin",
            "merchant_admin",
            "customer",
        }
        assert all(rule["Claim"] == "custom:user_role" for rule in rules)

    def test_no_policy_grants_every_action(
        self, dev_template: Template
    ):
        policies = dev_template.find_resources("AWS::IAM::Policy")
        for policy in policies.values():
            for statement in policy["Properties"]["PolicyDocument"]["Statement"]:
                actions = statement["Action"]
                actions = actions if isinstance(actions, list) else [actions]
                assert "*" not in actions
                assert "*:*" not in actions


class TestWaf:
    """Tests for the WebACL and its rules."""

    def test_rule_priorities(self):
        rules = build_api_rules()
        priorities = {rule.name: rule.priority for rule in rules}

        assert priorities == {
            "RateLimitRule": 1,
            "AWSManagedRulesCommonRuleSet": 2,
            "AWSManagedRulesKnownBadInputsRuleSet": 3,
            "AWSManagedRulesSQLiRuleSet": 4,
            "AWSManagedRulesAmazonIpReputationList": 5,
            "MerchantRateLimitRule": 6,
        }

    def test_web_acl(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::WAFv2::WebACL",
            {
                "Name": "mindsdb-rag-waf-dev",
                "Scope": "REGIONAL",
                "DefaultAction": {"Allow": {}},
            },
        )

    def test_rate_limit_rules(self, dev_template: Template):
        (web_acl,) = dev_template.find_resources("AWS::WAFv2::WebACL").values()
        rules = web_acl["Properties"]["Rules"]

        ip_rule = _rule_by_name(rules, "RateLimitRule")
        assert ip_rule["Action"] == {"Block": {}}
        assert ip_rule["Statement"]["RateBasedStatement"]["Limit"] == IP_RATE_LIMIT
        assert ip_rule["Statement"]["RateBasedStatement"]["AggregateKeyType"] == "IP"

        merchant_rule = _rule_by_name(rules, "MerchantRateLimitRule")
        statement = merchant_rule["Statement"]["RateBasedStatement"]
        assert merchant_rule["Action"] == {"Block": {}}
        assert statement["Limit"] == MERCHANT_RATE_LIMIT
        assert statement["AggregateKeyType"] == "CUSTOM_KEYS"
        header_key = statement["CustomKeys"][0]["Header"]
        assert header_key["Name"] == MERCHANT_HEADER
        assert header_key["TextTransformations"][0]["Type"] == "LOWERCASE"

    def test_common_rule_set_excludes_body_size(self, dev_template: Template):
        (web_acl,) = dev_template.find_resources("AWS::WAFv2::WebACL").values()
        common = _rule_by_name(web_acl["Properties"]["Rules"], "AWSManagedRulesCommonRuleSet")
        managed = common["Statement"]["ManagedRuleGroupStatement"]

        assert common["OverrideAction"] == {"None": {}}
        assert managed["VendorName"] == "AWS"
        assert managed["RuleActionOverrides"] == [
            {"Name": "SizeRestrictions_BODY", "ActionToUse": {"Count": {}}}
        ]

    def test_waf_logging_redacts_credentials(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::Logs::LogGroup",
            {"LogGroupName": "aws-waf-logs-mindsdb-rag-dev"},
        )
        dev_template.has_resource_properties(
            "AWS::WAFv2::LoggingConfiguration",
            {
                "RedactedFields": [
                    {"SingleHeader": {"Name": "authorization"}},
                    {"SingleHeader": {"Name": "cookie"}},
                ]
            },
        )

    def test_web_acl_associated_with_stage(self, dev_template: Template):
        (association,) = dev_template.find_resources(
            "AWS::WAFv2::WebACLAssociation"
        ).values()
        stages = dev_template.find_resources("AWS::ApiGateway::Stage")

        assert set(stages) <= set(association["DependsOn"])


class TestRestApi:
    """Tests for the REST API and authorizer."""

    def test_api_name_and_binary_media(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::ApiGateway::RestApi",
            {
                "Name": "mindsdb-rag-api-dev",
                "BinaryMediaTypes": ["*/*"],
                "Policy": Match.object_like(
                    {
                        "Statement": [
                            Match.object_like(
                                {"Action": "execute-api:Invoke", "Resource": "execute-api:/*"}
                            )
                        ]
                    }
                ),
            },
        )

    def test_stage_settings(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::ApiGateway::Stage",
            {
                "StageName": "dev",
                "MethodSettings": [
                    Match.object_like(
                        {
                            "DataTraceEnabled": True,
                            "LoggingLevel": "INFO",
                            "MetricsEnabled": True,
                            "ThrottlingRateLimit": 1000,
                            "ThrottlingBurstLimit": 2000,
                        }
                    )
                ],
            },
        )

    def test_production_disables_data_trace(self, production_template: Template):
        production_template.has_resource_properties(
            "AWS::ApiGateway::Stage",
            {
                "StageName": "production",
                "MethodSettings": [Match.object_like({"DataTraceEnabled": False})],
            },
        )

    def test_cognito_authorizer(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::ApiGateway::Authorizer",
            {
                "Name": "MindsDBRAGAuthorizer",
                "Type": "COGNITO_USER_POOLS",
                "IdentitySource": "method.request.header.Authorization",
                "AuthorizerResultTtlInSeconds": 300,
            },
        )

    def test_cors_preflight_allows_merchant_header(self, dev_template: Template):
        preflights = dev_template.find_resources(
            "AWS::ApiGateway::Method", {"Properties": {"HttpMethod": "OPTIONS"}}
        )
        assert preflights
        headers = next(iter(preflights.values()))["Properties"]["Integration"][
            "IntegrationResponses"
        ][0]["ResponseParameters"]["method.response.header.Access-Control-Allow-Headers"]
        assert "X-Merchant-Id" in headers
