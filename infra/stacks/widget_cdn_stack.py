"""
Widget CDN stack - S3 + CloudFront for the embeddable chat widget.

This stack deploys the widget bundle with:
- Versioned private S3 bucket (CloudFront access only)
- CloudFront distribution with:
  - Origin Access Control
  - Long-lived cache policy with CORS-aware cache keys
  - CORS and security response headers (the widget is embedded on merchant sites)
  - 403/404 mapped to /404.html
  - Optional custom domain with ACM certificate
"""

from aws_cdk import (
    CfnOutput,
    Duration,
    Stack,
    Tags,
)
from aws_cdk import (
    aws_certificatemanager as acm,
)
from aws_cdk import (
    aws_cloudfront as cloudfront,
)
from aws_cdk import (
    aws_cloudfront_origins as origins,
)
from aws_cdk import (
    aws_s3 as s3,
)
from constructs import Construct

from .config import EnvironmentConfig


class WidgetCdnStack(Stack):
    """
    Creates S3 + CloudFront infrastructure for the widget.

    Outputs are exported so release pipelines can upload and invalidate without
    looking up physical IDs.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: EnvironmentConfig,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        environment = config.environment

        # S3 bucket for widget files
        self.bucket = s3.Bucket(
            self,
            "WidgetBucket",
            bucket_name=f"rag-assistant-widget-{environment}-{self.account}",
            versioned=True,
            encryption=s3.BucketEncryption.S3_MANAGED,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            enforce_ssl=True,
            removal_policy=config.removal_policy,
            auto_delete_objects=not config.is_production,
            lifecycle_rules=[
                s3.LifecycleRule(
                    id="ExpireOldVersions",
                    noncurrent_version_expiration=Duration.days(30),
                )
            ],
            cors=[
                s3.CorsRule(
                    allowed_methods=[s3.HttpMethods.GET, s3.HttpMethods.HEAD],
                    allowed_origins=["*"],
                    allowed_headers=["*"],
                    max_age=3600,
                )
            ],
        )

        # Origin Access Control for CloudFront → S3
        oac = cloudfront.S3OriginAccessControl(
            self,
            "WidgetOAC",
            signing=cloudfront.Signing.SIGV4_ALWAYS,
        )

        s3_origin = origins.S3BucketOrigin.with_origin_access_control(
            self.bucket,
            origin_access_control=oac,
        )

        cache_policy = cloudfront.CachePolicy(
            self,
            "WidgetCachePolicy",
            cache_policy_name=f"rag-widget-cache-{environment}",
            comment="Cache policy for RAG Assistant widget files",
            default_ttl=Duration.days(7),
            max_ttl=Duration.days(365),
            min_ttl=Duration.seconds(0),
            header_behavior=cloudfront.CacheHeaderBehavior.allow_list(
                "Origin",
                "Access-Control-Request-Method",
                "Access-Control-Request-Headers",
            ),
            query_string_behavior=cloudfront.CacheQueryStringBehavior.all(),
            enable_accept_encoding_gzip=True,
            enable_accept_encoding_brotli=True,
        )

        response_headers_policy = cloudfront.ResponseHeadersPolicy(
            self,
            "WidgetResponseHeadersPolicy",
            response_headers_policy_name=f"rag-widget-headers-{environment}",
            comment="Response headers for RAG Assistant widget",
            cors_behavior=cloudfront.ResponseHeadersCorsBehavior(
                access_control_allow_origins=["*"],
                access_control_allow_headers=["*"],
                access_control_allow_methods=["GET", "HEAD", "OPTIONS"],
                access_control_allow_credentials=False,
                access_control_max_age=Duration.hours(1),
                origin_override=True,
            ),
            security_headers_behavior=cloudfront.ResponseSecurityHeadersBehavior(
                content_type_options=cloudfront.ResponseHeadersContentTypeOptions(override=True),
                frame_options=cloudfront.ResponseHeadersFrameOptions(
                    frame_option=cloudfront.HeadersFrameOption.DENY,
                    override=True,
                ),
                referrer_policy=cloudfront.ResponseHeadersReferrerPolicy(
                    referrer_policy=cloudfront.HeadersReferrerPolicy.STRICT_ORIGIN_WHEN_CROSS_ORIGIN,
                    override=True,
                ),
                strict_transport_security=cloudfront.ResponseHeadersStrictTransportSecurity(
                    access_control_max_age=Duration.days(365),
                    include_subdomains=True,
                    override=True,
                ),
                xss_protection=cloudfront.ResponseHeadersXSSProtection(
                    protection=True,
                    mode_block=True,
                    override=True,
                ),
            ),
        )

        # Certificate for custom domain
        certificate = None
        domain_names = None
        if config.widget_certificate_arn and config.widget_domain_name:
            certificate = acm.Certificate.from_certificate_arn(
                self, "Certificate", config.widget_certificate_arn
            )
            domain_names = [config.widget_domain_name]

        self.distribution = cloudfront.Distribution(
            self,
            "WidgetDistribution",
            comment=f"RAG Assistant Widget CDN - {environment}",
            domain_names=domain_names,
            certificate=certificate,
            default_behavior=cloudfront.BehaviorOptions(
                origin=s3_origin,
                viewer_protocol_policy=cloudfront.ViewerProtocolPolicy.REDIRECT_TO_HTTPS,
                allowed_methods=cloudfront.AllowedMethods.ALLOW_GET_HEAD_OPTIONS,
                cached_methods=cloudfront.CachedMethods.CACHE_GET_HEAD_OPTIONS,
                compress=True,
                cache_policy=cache_policy,
                response_headers_policy=response_headers_policy,
            ),
            price_class=cloudfront.PriceClass.PRICE_CLASS_100,  # North America + Europe
            enabled=True,
            http_version=cloudfront.HttpVersion.HTTP2_AND_3,
            minimum_protocol_version=cloudfront.SecurityPolicyProtocol.TLS_V1_2_2021,
            error_responses=[
                cloudfront.ErrorResponse(
                    http_status=status,
                    response_http_status=404,
                    response_page_path="/404.html",
                    ttl=Duration.minutes(5),
                )
                for status in (403, 404)
            ],
        )

        self.cdn_url = config.widget_domain_name or self.distribution.distribution_domain_name

        # Outputs
        CfnOutput(
            self,
            "BucketName",
            value=self.bucket.bucket_name,
            description="S3 bucket for widget files",
            export_name=f"rag-widget-bucket-{environment}",
        )

        CfnOutput(
            self,
            "DistributionId",
            value=self.distribution.distribution_id,
            description="CloudFront distribution ID for cache invalidation",
            export_name=f"rag-widget-distribution-{environment}",
        )

        CfnOutput(
            self,
            "DistributionDomainName",
            value=self.distribution.distribution_domain_name,
            description="CloudFront distribution domain name",
            export_name=f"rag-widget-domain-{environment}",
        )

        CfnOutput(
            self,
            "CdnUrl",
            value=f"https://{self.cdn_url}",
            description="Widget CDN URL",
            export_name=f"rag-widget-cdn-url-{environment}",
        )

        Tags.of(self).add("Environment", environment)
        Tags.of(self).add("Service", "RAG-Assistant-Widget")
        Tags.of(self).add("ManagedBy", "CDK")
