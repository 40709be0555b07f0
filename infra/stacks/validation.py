"""
CDK validation aspects for pre-deployment checks.

These aspects run during `cdk synth` and add warnings/errors for validation
rules, catching issues before deployment. Errors fail `cdk deploy`.

Usage:
    from stacks.validation import add_validation_aspects
    add_validation_aspects(app, is_production=config.is_production)
"""

import aws_cdk as cdk
import jsii
from aws_cdk import aws_dynamodb as dynamodb
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_ecs as ecs
from aws_cdk import aws_rds as rds
from aws_cdk import aws_s3 as s3
from constructs import IConstruct

PUBLIC_CIDRS = ("0.0.0.0/0", "::/0")
PUBLIC_PORTS = (80, 443)
MIN_PRODUCTION_TASKS = 2


def _cfn_properties(node: cdk.CfnResource) -> dict:
    """Resolved CloudFormation properties of an L1 resource, keyed in camelCase.

    Typed property getters fail on the lazy values L2 constructs assign.
    """
    return cdk.Stack.of(node).resolve(jsii.get(node, "cfnProperties")) or {}


@jsii.implements(cdk.IAspect)
class ProductionReadinessAspect:
    """
    Validates production-readiness requirements for deployed resources.

    Checks:
    - ECS services have at least 2 desired tasks for HA
    - Aurora clusters have deletion protection enabled
    - S3 buckets and DynamoDB tables are not destroyed with the stack
    """

    def __init__(self, enforce_ha: bool = True, enforce_deletion_protection: bool = True):
        self._enforce_ha = enforce_ha
        self._enforce_deletion_protection = enforce_deletion_protection

    def visit(self, node: IConstruct) -> None:
        # ECS: Require minimum 2 tasks for high availability
        if self._enforce_ha and isinstance(node, ecs.CfnService):
            desired_count = node.desired_count
            if isinstance(desired_count, (int, float)) and desired_count < MIN_PRODUCTION_TASKS:
                cdk.Annotations.of(node).add_warning_v2(
                    "mindsdb-rag:ecs-ha",
                    f"ECS service desires {desired_count} task(s); "
                    f"use at least {MIN_PRODUCTION_TASKS} in production",
                )

        # Aurora: Require deletion protection
        if self._enforce_deletion_protection and isinstance(node, rds.CfnDBCluster):
            if node.deletion_protection is not True:
                cdk.Annotations.of(node).add_warning_v2(
                    "mindsdb-rag:aurora-deletion-protection",
                    "Aurora cluster should have deletion_protection=True in production",
                )

        # Stateful data must survive a stack deletion
        if isinstance(node, (s3.CfnBucket, dynamodb.CfnTable)):
            if node.cfn_options.deletion_policy == cdk.CfnDeletionPolicy.DELETE:
                cdk.Annotations.of(node).add_warning_v2(
                    "mindsdb-rag:destroy-removal-policy",
                    "Resource is destroyed with the stack; use RemovalPolicy.RETAIN in production",
                )


@jsii.implements(cdk.IAspect)
class SecurityAspect:
    """
    Validates security requirements for deployed resources.

    Checks:
    - S3 buckets block public access
    - S3 buckets have encryption enabled
    - Security groups are not open to the internet except on HTTP/HTTPS
    """

    def visit(self, node: IConstruct) -> None:
        if isinstance(node, s3.CfnBucket):
            props = _cfn_properties(node)
            if not props.get("publicAccessBlockConfiguration"):
                cdk.Annotations.of(node).add_warning_v2(
                    "mindsdb-rag:s3-public-access",
                    "S3 bucket has no public access block configured",
                )
            if not props.get("bucketEncryption"):
                cdk.Annotations.of(node).add_warning_v2(
                    "mindsdb-rag:s3-encryption",
                    "S3 bucket has no server-side encryption configured",
                )

        elif isinstance(node, ec2.CfnSecurityGroup):
            rules = _cfn_properties(node).get("securityGroupIngress") or []
            for rule in rules:
                self._check_ingress(
                    node,
                    cidr=rule.get("cidrIp") or rule.get("cidrIpv6"),
                    protocol=rule.get("ipProtocol"),
                    from_port=rule.get("fromPort"),
                    to_port=rule.get("toPort"),
                )

        elif isinstance(node, ec2.CfnSecurityGroupIngress):
            props = _cfn_properties(node)
            self._check_ingress(
                node,
                cidr=props.get("cidrIp") or props.get("cidrIpv6"),
                protocol=props.get("ipProtocol"),
                from_port=props.get("fromPort"),
                to_port=props.get("toPort"),
            )

    @staticmethod
    def _check_ingress(node: IConstruct, *, cidr, protocol, from_port, to_port) -> None:
        if cidr not in PUBLIC_CIDRS:
            return
        if str(protocol) == "tcp" and from_port == to_port and from_port in PUBLIC_PORTS:
            return
        cdk.Annotations.of(node).add_error(
            f"Security group allows ingress from {cidr} on {protocol} "
            f"{from_port}-{to_port}; only ports 80 and 443 may be public"
        )


def add_validation_aspects(
    scope: cdk.App,
    is_production: bool = False,
    enforce_ha: bool = True,
    enforce_deletion_protection: bool = True,
    enable_security_checks: bool = True,
) -> None:
    """
    Add validation aspects to all stacks in the CDK app.

    Args:
        scope: The CDK App to add aspects to
        is_production: Production readiness checks only run for production
        enforce_ha: Whether to check for high-availability configurations
        enforce_deletion_protection: Whether to check for deletion protection
        enable_security_checks: Whether to run security-related validations
    """
    if is_production:
        cdk.Aspects.of(scope).add(
            ProductionReadinessAspect(
                enforce_ha=enforce_ha,
                enforce_deletion_protection=enforce_deletion_protection,
            )
        )

    if enable_security_checks:
        cdk.Aspects.of(scope).add(SecurityAspect())
