"""
MindsDB service - ECS Fargate behind an internal Application Load Balancer.

This construct deploys the MindsDB container with:
- Internal ALB (port 80) forwarding to MindsDB's HTTP API (47334)
- Health checks against MindsDB's status endpoint (47335)
- Mixed FARGATE / FARGATE_SPOT capacity
- CPU, memory and request-count auto-scaling
- Internal NLB + API Gateway VPC link so the REST API can reach the private ALB
"""

from aws_cdk import (
    Duration,
    Stack,
)
from aws_cdk import (
    aws_apigateway as apigateway,
)
from aws_cdk import (
    aws_applicationautoscaling as appscaling,
)
from aws_cdk import (
    aws_cloudwatch as cloudwatch,
)
from aws_cdk import (
    aws_ec2 as ec2,
)
from aws_cdk import (
    aws_ecs as ecs,
)
from aws_cdk import (
    aws_elasticloadbalancingv2 as elbv2,
)
from aws_cdk import (
    aws_elasticloadbalancingv2_targets as elbv2_targets,
)
from aws_cdk import (
    aws_iam as iam,
)
from aws_cdk import (
    aws_kms as kms,
)
from aws_cdk import (
    aws_logs as logs,
)
from aws_cdk import (
    aws_secretsmanager as secretsmanager,
)
from constructs import Construct

from .config import EnvironmentConfig

MINDSDB_API_PORT = 47334
MINDSDB_HEALTH_PORT = 47335
MINDSDB_STATUS_PATH = "/api/status"

# Request-count step scaling: (lower, upper, task change)
REQUEST_SCALING_STEPS = [
    (None, 100, 0),
    (100, 500, 1),
    (500, 1000, 2),
    (1000, None, 3),
]


class MindsDBService(Construct):
    """
    Runs MindsDB on ECS Fargate behind an internal load balancer.

    Exposes:
    - service: the Fargate service
    - load_balancer / target_group / listener: internal ALB resources
    - security_group: task security group (used for Aurora/Redis ingress)
    - log_group: container log group (used for metric filters)
    - vpc_link: API Gateway VPC link targeting the internal NLB
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: EnvironmentConfig,
        vpc: ec2.IVpc,
        cluster: ecs.ICluster,
        database_endpoint: str,
        database_secret: secretsmanager.ISecret,
        redis_secret: secretsmanager.ISecret,
        kms_key: kms.IKey,
    ) -> None:
        super().__init__(scope, construct_id)

        self._config = config
        stack = Stack.of(self)

        # =================================================================
        # Security Groups
        # =================================================================

        alb_security_group = ec2.SecurityGroup(
            self,
            "MindsDBInternalALBSG",
            vpc=vpc,
            description="Security group for MindsDB internal ALB",
            allow_all_outbound=True,
        )
        alb_security_group.add_ingress_rule(
            ec2.Peer.ipv4(vpc.vpc_cidr_block),
            ec2.Port.tcp(80),
            "Allow internal HTTP traffic",
        )
        alb_security_group.add_ingress_rule(
            ec2.Peer.ipv4(vpc.vpc_cidr_block),
            ec2.Port.tcp(443),
            "Allow internal HTTPS traffic",
        )

        self.security_group = ec2.SecurityGroup(
            self,
            "MindsDBECSSG",
            vpc=vpc,
            description="Security group for MindsDB ECS tasks",
            allow_all_outbound=True,
        )
        self.security_group.add_ingress_rule(
            alb_security_group,
            ec2.Port.tcp(MINDSDB_API_PORT),
            "Allow traffic from internal ALB to MindsDB",
        )
        self.security_group.add_ingress_rule(
            alb_security_group,
            ec2.Port.tcp(MINDSDB_HEALTH_PORT),
            "Allow health check traffic from ALB",
        )

        # =================================================================
        # Internal Application Load Balancer
        # =================================================================

        self.load_balancer = elbv2.ApplicationLoadBalancer(
            self,
            "MindsDBInternalALB",
            vpc=vpc,
            internet_facing=False,
            security_group=alb_security_group,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            deletion_protection=config.deletion_protection,
        )

        # =================================================================
        # Task Definition
        # =================================================================

        secrets_arn_pattern = (
            f"arn:aws:secretsmanager:{stack.region}:{stack.account}"
            f":secret:{config.resource_prefix}/*"
        )

        execution_role = iam.Role(
            self,
            "MindsDBTaskExecutionRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AmazonECSTaskExecutionRolePolicy"
                ),
            ],
        )
        execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=["secretsmanager:GetSecretValue", "kms:Decrypt"],
                resources=[secrets_arn_pattern, kms_key.key_arn],
            )
        )

        task_role = iam.Role(
            self,
            "MindsDBTaskRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
        )
        self._add_task_role_permissions(task_role, kms_key, secrets_arn_pattern)

        self.log_group = logs.LogGroup(
            self,
            "MindsDBLogGroup",
            log_group_name=f"/ecs/mindsdb-{config.environment}",
            retention=logs.RetentionDays.ONE_MONTH,
            removal_policy=config.removal_policy,
        )

        self.task_definition = ecs.FargateTaskDefinition(
            self,
            "MindsDBTaskDefinition",
            cpu=2048,
            memory_limit_mib=4096,
            execution_role=execution_role,
            task_role=task_role,
            family=f"mindsdb-{config.environment}",
        )

        container = self.task_definition.add_container(
            "MindsDBContainer",
            image=ecs.ContainerImage.from_registry(config.mindsdb_image),
            logging=ecs.LogDrivers.aws_logs(
                stream_prefix="mindsdb",
                log_group=self.log_group,
            ),
            environment={
                "MINDSDB_DB_SERVICE_HOST": database_endpoint,
                "MINDSDB_DB_SERVICE_PORT": "5432",
                "MINDSDB_DB_SERVICE_DATABASE": "postgres",
                "MINDSDB_STORAGE_DIR": "/opt/mindsdb/storage",
                "MINDSDB_CONFIG_PATH": "/opt/mindsdb/config.json",
                "AWS_DEFAULT_REGION": stack.region,
                "ENVIRONMENT": config.environment,
                "PYTHONUNBUFFERED": "1",
                "MINDSDB_TELEMETRY_ENABLED": "false",
            },
            secrets={
                "MINDSDB_DB_SERVICE_USER": ecs.Secret.from_secrets_manager(
                    database_secret,
                    field="username",
                ),
                "MINDSDB_DB_SERVICE_PASSWORD": ecs.Secret.from_secrets_manager(
                    database_secret,
                    field="password",
                ),
                "REDIS_HOST": ecs.Secret.from_secrets_manager(redis_secret, field="host"),
                "REDIS_PORT": ecs.Secret.from_secrets_manager(redis_secret, field="port"),
            },
            health_check=ecs.HealthCheck(
                command=[
                    "CMD-SHELL",
                    f"curl -f http://localhost:{MINDSDB_HEALTH_PORT}{MINDSDB_STATUS_PATH} || exit 1",
                ],
                interval=Duration.seconds(30),
                timeout=Duration.seconds(5),
                retries=3,
                start_period=Duration.seconds(60),
            ),
            essential=True,
            memory_reservation_mib=3072,
            cpu=1536,
        )

        container.add_port_mappings(
            ecs.PortMapping(
                container_port=MINDSDB_API_PORT,
                protocol=ecs.Protocol.TCP,
                name="mindsdb-api",
            ),
            ecs.PortMapping(
                container_port=MINDSDB_HEALTH_PORT,
                protocol=ecs.Protocol.TCP,
                name="mindsdb-health",
            ),
        )

        # =================================================================
        # Fargate Service
        # =================================================================

        self.service = ecs.FargateService(
            self,
            "MindsDBService",
            cluster=cluster,
            task_definition=self.task_definition,
            service_name=f"mindsdb-service-{config.environment}",
            desired_count=config.mindsdb_min_capacity,
            min_healthy_percent=50,
            max_healthy_percent=200,
            security_groups=[self.security_group],
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            assign_public_ip=False,
            capacity_provider_strategies=[
                # At least one task always runs on on-demand capacity
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE", weight=70, base=1),
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE_SPOT", weight=30),
            ],
            enable_execute_command=True,
            health_check_grace_period=Duration.seconds(120),
            platform_version=ecs.FargatePlatformVersion.LATEST,
            circuit_breaker=ecs.DeploymentCircuitBreaker(rollback=True),
        )

        # =================================================================
        # Target Group & Listener
        # =================================================================

        self.target_group = elbv2.ApplicationTargetGroup(
            self,
            "MindsDBTargetGroup",
            vpc=vpc,
            port=MINDSDB_API_PORT,
            protocol=elbv2.ApplicationProtocol.HTTP,
            target_type=elbv2.TargetType.IP,
            health_check=elbv2.HealthCheck(
                enabled=True,
                path=MINDSDB_STATUS_PATH,
                port=str(MINDSDB_HEALTH_PORT),
                protocol=elbv2.Protocol.HTTP,
                healthy_http_codes="200",
                interval=Duration.seconds(30),
                timeout=Duration.seconds(5),
                healthy_threshold_count=2,
                unhealthy_threshold_count=3,
            ),
            deregistration_delay=Duration.seconds(30),
        )

        self.listener = self.load_balancer.add_listener(
            "MindsDBListener",
            port=80,
            protocol=elbv2.ApplicationProtocol.HTTP,
            default_target_groups=[self.target_group],
            # Ingress is limited to the VPC CIDR by the ALB security group
            open=False,
        )

        self.service.attach_to_application_target_group(self.target_group)

        # =================================================================
        # Auto-scaling & Alarms
        # =================================================================

        self._configure_auto_scaling()
        self.alarms = self._create_service_alarms()

        # =================================================================
        # VPC Link (API Gateway -> NLB -> internal ALB)
        # =================================================================

        self.network_load_balancer = elbv2.NetworkLoadBalancer(
            self,
            "MindsDBVpcLinkNLB",
            vpc=vpc,
            internet_facing=False,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            cross_zone_enabled=True,
        )

        nlb_listener = self.network_load_balancer.add_listener("VpcLinkListener", port=80)
        alb_target_group = nlb_listener.add_targets(
            "InternalAlbTarget",
            port=80,
            targets=[elbv2_targets.AlbArnTarget(self.load_balancer.load_balancer_arn, 80)],
            health_check=elbv2.HealthCheck(
                protocol=elbv2.Protocol.HTTP,
                path=MINDSDB_STATUS_PATH,
                interval=Duration.seconds(30),
            ),
        )
        # NLB can only register the ALB once the ALB has a listener on the target port
        alb_target_group.node.add_dependency(self.listener)

        self.vpc_link = apigateway.VpcLink(
            self,
            "MindsDBVpcLink",
            vpc_link_name=config.name("vpc-link"),
            description="API Gateway access to the MindsDB internal load balancer",
            targets=[self.network_load_balancer],
        )

    @property
    def internal_endpoint(self) -> str:
        """HTTP endpoint of the internal ALB, reachable from inside the VPC."""
        return f"http://{self.load_balancer.load_balancer_dns_name}"

    @property
    def vpc_link_endpoint(self) -> str:
        """HTTP endpoint API Gateway integrations use through the VPC link."""
        return f"http://{self.network_load_balancer.load_balancer_dns_name}"

    def _add_task_role_permissions(
        self, task_role: iam.Role, kms_key: kms.IKey, secrets_arn_pattern: str
    ) -> None:
        """Least-privilege permissions for the MindsDB container."""
        stack = Stack.of(self)
        prefix = self._config.resource_prefix

        task_role.add_to_policy(
            iam.PolicyStatement(
                actions=[
                    "bedrock:InvokeModel",
                    "bedrock:InvokeModelWithResponseStream",
                ],
                resources=[f"arn:aws:bedrock:{stack.region}::foundation-model/*"],
            )
        )
        task_role.add_to_policy(
            iam.PolicyStatement(
                actions=["bedrock:ListFoundationModels"],
                resources=["*"],
            )
        )
        task_role.add_to_policy(
            iam.PolicyStatement(
                actions=["s3:GetObject", "s3:PutObject", "s3:DeleteObject", "s3:ListBucket"],
                resources=[f"arn:aws:s3:::{prefix}-*", f"arn:aws:s3:::{prefix}-*/*"],
            )
        )
        task_role.add_to_policy(
            iam.PolicyStatement(
                actions=["secretsmanager:GetSecretValue"],
                resources=[secrets_arn_pattern],
            )
        )
        task_role.add_to_policy(
            iam.PolicyStatement(
                actions=["kms:Decrypt", "kms:GenerateDataKey"],
                resources=[kms_key.key_arn],
            )
        )
        task_role.add_to_policy(
            iam.PolicyStatement(
                actions=["logs:CreateLogGroup", "logs:CreateLogStream", "logs:PutLogEvents"],
                resources=[f"arn:aws:logs:{stack.region}:{stack.account}:*"],
            )
        )
        # PutMetricData has no resource-level permissions; scope by namespace instead
        task_role.add_to_policy(
            iam.PolicyStatement(
                actions=["cloudwatch:PutMetricData"],
                resources=["*"],
                conditions={"StringLike": {"cloudwatch:namespace": "MindsDB/*"}},
            )
        )

    def _configure_auto_scaling(self) -> None:
        scaling = self.service.auto_scale_task_count(
            min_capacity=self._config.mindsdb_min_capacity,
            max_capacity=self._config.mindsdb_max_capacity,
        )

        scaling.scale_on_cpu_utilization(
            "MindsDBCpuScaling",
            target_utilization_percent=70,
            scale_in_cooldown=Duration.minutes(5),
            scale_out_cooldown=Duration.minutes(2),
        )

        scaling.scale_on_memory_utilization(
            "MindsDBMemoryScaling",
            target_utilization_percent=80,
            scale_in_cooldown=Duration.minutes(5),
            scale_out_cooldown=Duration.minutes(2),
        )

        request_count = cloudwatch.Metric(
            namespace="AWS/ApplicationELB",
            metric_name="RequestCountPerTarget",
            dimensions_map={
                "TargetGroup": self.target_group.target_group_full_name,
            },
            statistic="Sum",
            period=Duration.minutes(1),
        )

        scaling.scale_on_metric(
            "MindsDBRequestScaling",
            metric=request_count,
            scaling_steps=[
                appscaling.ScalingInterval(lower=lower, upper=upper, change=change)
                for lower, upper, change in REQUEST_SCALING_STEPS
            ],
            adjustment_type=appscaling.AdjustmentType.CHANGE_IN_CAPACITY,
            cooldown=Duration.minutes(3),
        )

    def _create_service_alarms(self) -> list[cloudwatch.Alarm]:
        """Service-level alarms. MonitoringAlertingStack points their actions at the alert topic."""
        config = self._config

        high_cpu = cloudwatch.Alarm(
            self,
            "MindsDBHighCpuAlarm",
            alarm_name=config.name("mindsdb-high-cpu"),
            alarm_description="MindsDB service high CPU utilization",
            metric=self.service.metric_cpu_utilization(
                period=Duration.minutes(5),
                statistic="Average",
            ),
            threshold=85,
            evaluation_periods=2,
            comparison_operator=cloudwatch.ComparisonOperator.GREATER_THAN_THRESHOLD,
            treat_missing_data=cloudwatch.TreatMissingData.NOT_BREACHING,
        )

        high_memory = cloudwatch.Alarm(
            self,
            "MindsDBHighMemoryAlarm",
            alarm_name=config.name("mindsdb-high-memory"),
            alarm_description="MindsDB service high memory utilization",
            metric=self.service.metric_memory_utilization(
                period=Duration.minutes(5),
                statistic="Average",
            ),
            threshold=90,
            evaluation_periods=2,
            comparison_operator=cloudwatch.ComparisonOperator.GREATER_THAN_THRESHOLD,
            treat_missing_data=cloudwatch.TreatMissingData.NOT_BREACHING,
        )

        unhealthy_targets = cloudwatch.Alarm(
            self,
            "MindsDBUnhealthyTargetsAlarm",
            alarm_name=config.name("mindsdb-unhealthy-targets"),
            alarm_description="MindsDB service has unhealthy targets",
            metric=cloudwatch.Metric(
                namespace="AWS/ApplicationELB",
                metric_name="UnHealthyHostCount",
                dimensions_map={
                    "LoadBalancer": self.load_balancer.load_balancer_full_name,
                    "TargetGroup": self.target_group.target_group_full_name,
                },
                statistic="Average",
                period=Duration.minutes(1),
            ),
            threshold=1,
            evaluation_periods=2,
            comparison_operator=cloudwatch.ComparisonOperator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD,
            treat_missing_data=cloudwatch.TreatMissingData.NOT_BREACHING,
        )

        low_healthy_targets = cloudwatch.Alarm(
            self,
            "MindsDBLowHealthyTargetsAlarm",
            alarm_name=config.name("mindsdb-low-healthy-targets"),
            alarm_description="MindsDB service has too few healthy targets",
            metric=cloudwatch.Metric(
                namespace="AWS/ApplicationELB",
                metric_name="HealthyHostCount",
                dimensions_map={
                    "LoadBalancer": self.load_balancer.load_balancer_full_name,
                    "TargetGroup": self.target_group.target_group_full_name,
                },
                statistic="Average",
                period=Duration.minutes(1),
            ),
            threshold=1,
            evaluation_periods=2,
            comparison_operator=cloudwatch.ComparisonOperator.LESS_THAN_THRESHOLD,
            treat_missing_data=cloudwatch.TreatMissingData.BREACHING,
        )

        return [high_cpu, high_memory, unhealthy_targets, low_healthy_targets]
