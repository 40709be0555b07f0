"""
MindsDB RAG stack - root stack for one environment.

Owns the shared foundation and composes the service constructs:
- KMS key, VPC (public / private / isolated database subnets) and VPC endpoints
- Aurora PostgreSQL cluster and ElastiCache Redis
- ECS cluster, S3 buckets, secrets and the DynamoDB session table
- MindsDB service, Lambda functions, optional Bedrock agent, auth/WAF/API,
  API routes, monitoring

Everything lives in one stack so security group ingress and IAM grants between
components never create cross-stack reference cycles.
"""

from aws_cdk import (
    CfnOutput,
    Duration,
    SecretValue,
    Stack,
)
from aws_cdk import (
    aws_dynamodb as dynamodb,
)
from aws_cdk import (
    aws_ec2 as ec2,
)
from aws_cdk import (
    aws_ecs as ecs,
)
from aws_cdk import (
    aws_elasticache as elasticache,
)
from aws_cdk import (
    aws_kms as kms,
)
from aws_cdk import (
    aws_logs as logs,
)
from aws_cdk import (
    aws_rds as rds,
)
from aws_cdk import (
    aws_s3 as s3,
)
from aws_cdk import (
    aws_secretsmanager as secretsmanager,
)
from constructs import Construct

from .api_gateway_integration_stack import ApiGatewayIntegrationStack
from .auth_security_stack import AuthSecurityStack
from .bedrock_agent_stack import FOUNDATION_MODEL, BedrockAgentStack
from .config import EnvironmentConfig
from .lambda_functions_stack import LambdaFunctionsStack
from .mindsdb_service import MindsDBService
from .monitoring_alerting_stack import MonitoringAlertingStack

POSTGRES_PORT = 5432
REDIS_PORT = 6379
AUDIT_LOG_RETENTION_DAYS = 2555  # ~7 years

INTERFACE_ENDPOINTS = (
    ("SecretsManagerEndpoint", ec2.InterfaceVpcEndpointAwsService.SECRETS_MANAGER),
    ("KMSEndpoint", ec2.InterfaceVpcEndpointAwsService.KMS),
    ("BedrockEndpoint", ec2.InterfaceVpcEndpointAwsService.BEDROCK),
    ("BedrockRuntimeEndpoint", ec2.InterfaceVpcEndpointAwsService.BEDROCK_RUNTIME),
    ("CloudWatchLogsEndpoint", ec2.InterfaceVpcEndpointAwsService.CLOUDWATCH_LOGS),
    ("ECREndpoint", ec2.InterfaceVpcEndpointAwsService.ECR),
    ("ECRDockerEndpoint", ec2.InterfaceVpcEndpointAwsService.ECR_DOCKER),
)


class MindsDBRAGStack(Stack):
    """
    Root stack for the MindsDB RAG assistant.

    Exposes the shared resources as attributes (vpc, kms_key, database, redis_cluster,
    cluster, session_table, mindsdb_service, ...) so tests and sibling stacks can
    reference them.
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

        self.config = config
        prefix = config.resource_prefix

        # =================================================================
        # Encryption
        # =================================================================

        self.kms_key = kms.Key(
            self,
            "MindsDBRAGKey",
            description=f"MindsDB RAG encryption key ({config.environment})",
            enable_key_rotation=True,
            alias=f"alias/{config.stack_name}",
            removal_policy=config.removal_policy,
        )

        # =================================================================
        # Network
        # =================================================================

        self.vpc = ec2.Vpc(
            self,
            "MindsDBRAGVpc",
            max_azs=config.vpc_max_azs,
            nat_gateways=config.nat_gateways,
            enable_dns_hostnames=True,
            enable_dns_support=True,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name="Public",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=24,
                ),
                ec2.SubnetConfiguration(
                    name="Private",
                    subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS,
                    cidr_mask=24,
                ),
                ec2.SubnetConfiguration(
                    name="Database",
                    subnet_type=ec2.SubnetType.PRIVATE_ISOLATED,
                    cidr_mask=28,
                ),
            ],
        )

        self.vpc.add_gateway_endpoint(
            "S3Endpoint",
            service=ec2.GatewayVpcEndpointAwsService.S3,
        )
        for endpoint_id, service in INTERFACE_ENDPOINTS:
            self.vpc.add_interface_endpoint(
                endpoint_id,
                service=service,
                private_dns_enabled=True,
                subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            )

        self.database_security_group = ec2.SecurityGroup(
            self,
            "DatabaseSecurityGroup",
            vpc=self.vpc,
            description="Security group for Aurora PostgreSQL",
            allow_all_outbound=False,
        )

        self.redis_security_group = ec2.SecurityGroup(
            self,
            "RedisSecurityGroup",
            vpc=self.vpc,
            description="Security group for ElastiCache Redis",
            allow_all_outbound=False,
        )

        # =================================================================
        # Aurora PostgreSQL
        # =================================================================

        engine = rds.DatabaseClusterEngine.aurora_postgres(
            version=rds.AuroraPostgresEngineVersion.VER_15_4,
        )

        parameter_group = rds.ParameterGroup(
            self,
            "AuroraParameterGroup",
            engine=engine,
            description="MindsDB RAG Aurora PostgreSQL parameters",
            parameters={
                "log_statement": "all",
                "log_min_duration_statement": "1000",
            },
        )

        instance_type = ec2.InstanceType(config.aurora_instance_class)

        self.database = rds.DatabaseCluster(
            self,
            "AuroraCluster",
            engine=engine,
            credentials=rds.Credentials.from_generated_secret(
                "postgres",
                secret_name=f"{prefix}/aurora-credentials",
                encryption_key=self.kms_key,
            ),
            writer=rds.ClusterInstance.provisioned("writer", instance_type=instance_type),
            readers=[
                rds.ClusterInstance.provisioned(f"reader{i}", instance_type=instance_type)
                for i in range(1, config.aurora_reader_count + 1)
            ],
            vpc=self.vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_ISOLATED),
            security_groups=[self.database_security_group],
            parameter_group=parameter_group,
            storage_encrypted=True,
            storage_encryption_key=self.kms_key,
            backup=rds.BackupProps(
                retention=Duration.days(config.aurora_backup_retention_days),
                preferred_window="03:00-04:00",
            ),
            preferred_maintenance_window="sun:04:00-sun:05:00",
            cloudwatch_logs_exports=["postgresql"],
            cloudwatch_logs_retention=logs.RetentionDays.ONE_MONTH,
            deletion_protection=config.deletion_protection,
            removal_policy=config.removal_policy,
        )

        # =================================================================
        # ElastiCache Redis
        # =================================================================

        redis_subnet_group = elasticache.CfnSubnetGroup(
            self,
            "RedisSubnetGroup",
            description="Subnet group for MindsDB RAG Redis",
            subnet_ids=self.vpc.select_subnets(
                subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS
            ).subnet_ids,
            cache_subnet_group_name=config.name("redis-subnets"),
        )

        redis_parameter_group = elasticache.CfnParameterGroup(
            self,
            "RedisParameterGroup",
            cache_parameter_group_family="redis7",
            description="MindsDB RAG Redis parameters",
            properties={"maxmemory-policy": "allkeys-lru"},
        )

        self.redis_cluster = elasticache.CfnCacheCluster(
            self,
            "RedisCluster",
            cluster_name=config.name("redis"),
            engine="redis",
            engine_version="7.0",
            cache_node_type=config.redis_node_type,
            num_cache_nodes=1,
            cache_subnet_group_name=redis_subnet_group.ref,
            cache_parameter_group_name=redis_parameter_group.ref,
            vpc_security_group_ids=[self.redis_security_group.security_group_id],
            preferred_maintenance_window="sun:05:00-sun:06:00",
            snapshot_retention_limit=5,
            snapshot_window="03:00-05:00",
        )
        self.redis_cluster.add_dependency(redis_subnet_group)
        self.redis_cluster.add_dependency(redis_parameter_group)

        # =================================================================
        # ECS cluster
        # =================================================================

        self.cluster = ecs.Cluster(
            self,
            "MindsDBCluster",
            cluster_name=config.stack_name,
            vpc=self.vpc,
            enable_fargate_capacity_providers=True,
            container_insights_v2=ecs.ContainerInsights.ENABLED,
        )

        # =================================================================
        # S3 buckets
        # =================================================================

        self.documents_bucket = self._create_bucket(
            "DocumentsBucket",
            versioned=True,
            lifecycle_rules=[
                s3.LifecycleRule(
                    id="ExpireOldVersions",
                    noncurrent_version_expiration=Duration.days(30),
                )
            ],
        )

        self.model_artifacts_bucket = self._create_bucket("ModelArtifactsBucket", versioned=True)

        self.audit_bucket = self._create_bucket(
            "AuditLogsBucket",
            versioned=False,
            lifecycle_rules=[
                s3.LifecycleRule(
                    id="ArchiveAuditLogs",
                    transitions=[
                        s3.Transition(
                            storage_class=s3.StorageClass.INFREQUENT_ACCESS,
                            transition_after=Duration.days(30),
                        ),
                        s3.Transition(
                            storage_class=s3.StorageClass.GLACIER,
                            transition_after=Duration.days(90),
                        ),
                    ],
                    expiration=Duration.days(AUDIT_LOG_RETENTION_DAYS),
                )
            ],
        )

        # =================================================================
        # Secrets
        # =================================================================

        self.mindsdb_api_key_secret = secretsmanager.Secret(
            self,
            "MindsDBApiKeySecret",
            secret_name=f"{prefix}/mindsdb-api-key",
            description="MindsDB API key",
            encryption_key=self.kms_key,
            generate_secret_string=secretsmanager.SecretStringGenerator(
                secret_string_template='{"username": "mindsdb"}',
                generate_string_key="apiKey",
                exclude_characters='"@/\\',
                password_length=32,
            ),
        )

        self.bedrock_config_secret = secretsmanager.Secret(
            self,
            "BedrockConfigSecret",
            secret_name=f"{prefix}/bedrock-config",
            description="Bedrock model configuration",
            encryption_key=self.kms_key,
            secret_object_value={
                "modelId": SecretValue.unsafe_plain_text(FOUNDATION_MODEL),
                "region": SecretValue.unsafe_plain_text(self.region),
                "maxTokens": SecretValue.unsafe_plain_text("4096"),
                "temperature": SecretValue.unsafe_plain_text("0.7"),
            },
        )

        # The cache cluster has no in-transit encryption, so clients connect without TLS
        self.redis_secret = secretsmanager.Secret(
            self,
            "RedisConfigSecret",
            secret_name=f"{prefix}/redis-config",
            description="Redis connection settings",
            encryption_key=self.kms_key,
            secret_object_value={
                "host": SecretValue.unsafe_plain_text(
                    self.redis_cluster.attr_redis_endpoint_address
                ),
                "port": SecretValue.unsafe_plain_text(self.redis_cluster.attr_redis_endpoint_port),
                "ssl": SecretValue.unsafe_plain_text("false"),
            },
        )

        # =================================================================
        # DynamoDB session table
        # =================================================================

        self.session_table = dynamodb.Table(
            self,
            "SessionTable",
            table_name=config.name("sessions"),
            partition_key=dynamodb.Attribute(name="merchant_id", type=dynamodb.AttributeType.STRING),
            sort_key=dynamodb.Attribute(name="session_id", type=dynamodb.AttributeType.STRING),
            billing_mode=dynamodb.BillingMode.PAY_PER_REQUEST,
            encryption=dynamodb.TableEncryption.CUSTOMER_MANAGED,
            encryption_key=self.kms_key,
            time_to_live_attribute="ttl",
            point_in_time_recovery_specification=dynamodb.PointInTimeRecoverySpecification(
                point_in_time_recovery_enabled=True,
            ),
            removal_policy=config.removal_policy,
        )
        self.session_table.add_global_secondary_index(
            index_name="SessionIdIndex",
            partition_key=dynamodb.Attribute(name="session_id", type=dynamodb.AttributeType.STRING),
        )
        self.session_table.add_global_secondary_index(
            index_name="UserIdIndex",
            partition_key=dynamodb.Attribute(name="user_id", type=dynamodb.AttributeType.STRING),
            sort_key=dynamodb.Attribute(name="created_at", type=dynamodb.AttributeType.STRING),
        )

        # =================================================================
        # Service constructs
        # =================================================================

        self.mindsdb_service = MindsDBService(
            self,
            "MindsDBService",
            config=config,
            vpc=self.vpc,
            cluster=self.cluster,
            database_endpoint=self.database.cluster_endpoint.hostname,
            database_secret=self.database.secret,
            redis_secret=self.redis_secret,
            kms_key=self.kms_key,
        )

        # MindsDB tasks reach Aurora and Redis
        ec2.CfnSecurityGroupIngress(
            self,
            "MindsDBToDatabaseIngress",
            ip_protocol="tcp",
            from_port=POSTGRES_PORT,
            to_port=POSTGRES_PORT,
            group_id=self.database_security_group.security_group_id,
            source_security_group_id=self.mindsdb_service.security_group.security_group_id,
            description="MindsDB tasks to Aurora PostgreSQL",
        )

        ec2.CfnSecurityGroupIngress(
            self,
            "MindsDBToRedisIngress",
            ip_protocol="tcp",
            from_port=REDIS_PORT,
            to_port=REDIS_PORT,
            group_id=self.redis_security_group.security_group_id,
            source_security_group_id=self.mindsdb_service.security_group.security_group_id,
            description="MindsDB tasks to Redis",
        )

        self.lambda_functions = LambdaFunctionsStack(
            self,
            "LambdaFunctions",
            config=config,
            vpc=self.vpc,
            kms_key=self.kms_key,
            session_table=self.session_table,
            audit_bucket=self.audit_bucket,
            mindsdb_endpoint=self.mindsdb_service.internal_endpoint,
        )

        self.bedrock_agent = None
        if config.enable_bedrock_agent:
            self.bedrock_agent = BedrockAgentStack(
                self,
                "BedrockAgent",
                config=config,
                session_table=self.session_table,
                tools_function=self.lambda_functions.tools_function,
                checkout_function=self.lambda_functions.checkout_function,
            )

        self.auth_security = AuthSecurityStack(self, "AuthSecurity", config=config)

        self.api_integration = ApiGatewayIntegrationStack(
            self,
            "ApiGatewayIntegration",
            config=config,
            api=self.auth_security.api,
            authorizer=self.auth_security.authorizer,
            vpc_link=self.mindsdb_service.vpc_link,
            mindsdb_endpoint=self.mindsdb_service.vpc_link_endpoint,
            tools_function=self.lambda_functions.tools_function,
            tools_health_function=self.lambda_functions.tools_health_function,
            checkout_function=self.lambda_functions.checkout_function,
        )

        self.monitoring = MonitoringAlertingStack(
            self,
            "MonitoringAlerting",
            config=config,
            kms_key=self.kms_key,
            api=self.auth_security.api,
            ecs_cluster=self.cluster,
            ecs_service=self.mindsdb_service.service,
            database=self.database,
            redis_cluster_id=self.redis_cluster.ref,
            lambda_functions=self.lambda_functions.functions,
            mindsdb_log_group=self.mindsdb_service.log_group,
            service_alarms=self.mindsdb_service.alarms,
        )

        # =================================================================
        # Outputs
        # =================================================================

        CfnOutput(
            self,
            "VpcId",
            value=self.vpc.vpc_id,
            description="VPC ID",
            export_name=f"{config.stack_name}-vpc-id",
        )

        CfnOutput(
            self,
            "ECSClusterName",
            value=self.cluster.cluster_name,
            description="ECS cluster name",
            export_name=f"{config.stack_name}-ecs-cluster",
        )

        CfnOutput(
            self,
            "DatabaseEndpoint",
            value=self.database.cluster_endpoint.hostname,
            description="Aurora PostgreSQL writer endpoint",
            export_name=f"{config.stack_name}-db-endpoint",
        )

        CfnOutput(
            self,
            "RedisEndpoint",
            value=self.redis_cluster.attr_redis_endpoint_address,
            description="Redis endpoint address",
            export_name=f"{config.stack_name}-redis-endpoint",
        )

        CfnOutput(
            self,
            "KMSKeyId",
            value=self.kms_key.key_id,
            description="KMS key ID",
            export_name=f"{config.stack_name}-kms-key",
        )

        CfnOutput(
            self,
            "MindsDBInternalEndpoint",
            value=self.mindsdb_service.internal_endpoint,
            description="MindsDB internal ALB endpoint",
            export_name=f"{config.stack_name}-mindsdb-endpoint",
        )

        CfnOutput(
            self,
            "MindsDBServiceName",
            value=self.mindsdb_service.service.service_name,
            description="MindsDB ECS service name",
            export_name=f"{config.stack_name}-mindsdb-service",
        )

        CfnOutput(
            self,
            "SessionTableName",
            value=self.session_table.table_name,
            description="DynamoDB session table name",
            export_name=f"{config.stack_name}-session-table",
        )

    def _create_bucket(
        self,
        construct_id: str,
        *,
        versioned: bool,
        lifecycle_rules: list[s3.LifecycleRule] | None = None,
    ) -> s3.Bucket:
        """Create a KMS-encrypted private bucket with SSL enforced."""
        return s3.Bucket(
            self,
            construct_id,
            versioned=versioned,
            encryption=s3.BucketEncryption.KMS,
            encryption_key=self.kms_key,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            enforce_ssl=True,
            lifecycle_rules=lifecycle_rules,
            removal_policy=self.config.removal_policy,
            auto_delete_objects=not self.config.is_production,
        )
