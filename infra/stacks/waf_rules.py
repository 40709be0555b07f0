"""
WAF rule definitions for the public API.

Rules, in priority order:
1. RateLimitRule: 2000 requests per 5-minute window per IP
2. AWSManagedRulesCommonRuleSet: core rule set (SizeRestrictions_BODY counted, not blocked,
   so document ingestion payloads are not rejected)
3. AWSManagedRulesKnownBadInputsRuleSet: known bad inputs (Log4j, etc.)
4. AWSManagedRulesSQLiRuleSet: SQL injection
5. AWSManagedRulesAmazonIpReputationList: IPs with poor reputation
6. MerchantRateLimitRule: 10000 requests per 5-minute window per x-merchant-id header
"""

from aws_cdk import aws_wafv2 as wafv2

IP_RATE_LIMIT = 2000
MERCHANT_RATE_LIMIT = 10000
MERCHANT_HEADER = "x-merchant-id"

# AWS Managed Rule Groups applied to the API WebACL
MANAGED_RULE_GROUPS = [
    {
        "name": "AWSManagedRulesCommonRuleSet",
        "vendor": "AWS",
        "priority": 2,
        "metric_name": "CommonRuleSetMetric",
        "count_only_rules": ["SizeRestrictions_BODY"],
    },
    {
        "name": "AWSManagedRulesKnownBadInputsRuleSet",
        "vendor": "AWS",
        "priority": 3,
        "metric_name": "KnownBadInputsRuleSetMetric",
    },
    {
        "name": "AWSManagedRulesSQLiRuleSet",
        "vendor": "AWS",
        "priority": 4,
        "metric_name": "SQLiRuleSetMetric",
    },
    {
        "name": "AWSManagedRulesAmazonIpReputationList",
        "vendor": "AWS",
        "priority": 5,
        "metric_name": "IpReputationListMetric",
    },
]


def _visibility(metric_name: str) -> wafv2.CfnWebACL.VisibilityConfigProperty:
    return wafv2.CfnWebACL.VisibilityConfigProperty(
        cloud_watch_metrics_enabled=True,
        metric_name=metric_name,
        sampled_requests_enabled=True,
    )


def build_ip_rate_limit_rule() -> wafv2.CfnWebACL.RuleProperty:
    """Build a rate-based rule that limits requests per IP."""
    return wafv2.CfnWebACL.RuleProperty(
        name="RateLimitRule",
        priority=1,
        action=wafv2.CfnWebACL.RuleActionProperty(block={}),
        statement=wafv2.CfnWebACL.StatementProperty(
            rate_based_statement=wafv2.CfnWebACL.RateBasedStatementProperty(
                limit=IP_RATE_LIMIT,
                aggregate_key_type="IP",
            ),
        ),
        visibility_config=_visibility("RateLimitRule"),
    )


def build_merchant_rate_limit_rule() -> wafv2.CfnWebACL.RuleProperty:
    """Build a rate-based rule keyed on the lower-cased merchant header."""
    return wafv2.CfnWebACL.RuleProperty(
        name="MerchantRateLimitRule",
        priority=6,
        action=wafv2.CfnWebACL.RuleActionProperty(block={}),
        statement=wafv2.CfnWebACL.StatementProperty(
            rate_based_statement=wafv2.CfnWebACL.RateBasedStatementProperty(
                limit=MERCHANT_RATE_LIMIT,
                aggregate_key_type="CUSTOM_KEYS",
                custom_keys=[
                    wafv2.CfnWebACL.RateBasedStatementCustomKeyProperty(
                        header=wafv2.CfnWebACL.RateLimitHeaderProperty(
                            name=MERCHANT_HEADER,
                            text_transformations=[
                                wafv2.CfnWebACL.TextTransformationProperty(
                                    priority=0,
                                    type="LOWERCASE",
                                )
                            ],
                        ),
                    )
                ],
            ),
        ),
        visibility_config=_visibility("MerchantRateLimitRule"),
    )


def _build_managed_rule(rule: dict) -> wafv2.CfnWebACL.RuleProperty:
    rule_action_overrides = [
        wafv2.CfnWebACL.RuleActionOverrideProperty(
            name=name,
            action_to_use=wafv2.CfnWebACL.RuleActionProperty(count={}),
        )
        for name in rule.get("count_only_rules", [])
    ]

    return wafv2.CfnWebACL.RuleProperty(
        name=rule["name"],
        priority=rule["priority"],
        override_action=wafv2.CfnWebACL.OverrideActionProperty(none={}),
        statement=wafv2.CfnWebACL.StatementProperty(
            managed_rule_group_statement=wafv2.CfnWebACL.ManagedRuleGroupStatementProperty(
                vendor_name=rule["vendor"],
                name=rule["name"],
                rule_action_overrides=rule_action_overrides or None,
            ),
        ),
        visibility_config=_visibility(rule["metric_name"]),
    )


def build_api_rules() -> list[wafv2.CfnWebACL.RuleProperty]:
    """Build all WebACL rules for the REST API, ordered by priority."""
    rules = [build_ip_rate_limit_rule()]
    rules.extend(_build_managed_rule(rule) for rule in MANAGED_RULE_GROUPS)
    rules.append(build_merchant_rate_limit_rule())
    return rules


def build_visibility_config(metric_name: str) -> wafv2.CfnWebACL.VisibilityConfigProperty:
    """Visibility config for the WebACL itself."""
    return _visibility(metric_name)
