"""
Monitoring and alerting - CloudWatch dashboard, alarms and synthetic checks.

Provides operational visibility into:
- API Gateway (requests, latency, 4XX/5XX)
- MindsDB ECS service (CPU, memory, running tasks)
- Aurora (CPU, connections, latency) and Redis (CPU, evictions, memory)
- Lambda functions (duration, errors)
- Business metrics published by MindsDB (sessions, cost per session, checkouts)

Alarms notify the alerts SNS topic on ALARM and OK for:
- API latency and error rate
- ECS CPU, database connections, Redis CPU and evictions
- Lambda errors
- Cost per session
- Synthetic health check success rate
- Alarms passed in by other constructs (the MindsDB service alarms)
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
    aws_cloudwatch as cloudwatch,
)
from aws_cdk import (
    aws_cloudwatch_actions as cw_actions,
)
from aws_cdk import (
    aws_ecs as ecs,
)
from aws_cdk import (
    aws_events as events,
)
from aws_cdk import (
    aws_events_targets as events_targets,
)
from aws_cdk import (
    aws_iam as iam,
)
from aws_cdk import (
    aws_kms as kms,
)
from aws_cdk import (
    aws_lambda as lambda_,
)
from aws_cdk import (
    aws_logs as logs,
)
from aws_cdk import (
    aws_rds as rds,
)
from aws_cdk import (
    aws_sns as sns,
)
from aws_cdk import (
    aws_sns_subscriptions as sns_subscriptions,
)
from constructs import Construct

from .config import EnvironmentConfig
from .lambda_functions_stack import FUNCTIONS_DIR, create_python_lambda

BUSINESS_NAMESPACE = "MindsDB/RAG"
SECURITY_NAMESPACE = "MindsDB/RAG/Security"
SYNTHETIC_NAMESPACE = "MindsDB/RAG/Synthetic"

# Metric filters on the MindsDB log group:
# (construct id, namespace, metric name, filter pattern, metric value)
LOG_METRIC_FILTERS = [
    (
        "SessionStartMetric",
        BUSINESS_NAMESPACE,
        "SessionsStarted",
        '[timestamp, requestId, level="info", message="Session started"]',
        "1",
    ),
    (
        "CostMetric",
        BUSINESS_NAMESPACE,
        "CostPerSession",
        '[timestamp, requestId, level="info", message="Session cost calculated", cost]',
        "$cost",
    ),
    (
        "CheckoutSuccessMetric",
        BUSINESS_NAMESPACE,
        "SuccessfulCheckouts",
        '[timestamp, requestId, level="info", message="Checkout completed successfully"]',
        "1",
    ),
    (
        "CheckoutFailureMetric",
        BUSINESS_NAMESPACE,
        "FailedCheckouts",
        '[timestamp, requestId, level="error", message="Checkout failed"]',
        "1",
    ),
    (
        "SecurityEventMetric",
        SECURITY_NAMESPACE,
        "SecurityEvents",
        '[timestamp, requestId, level="warn", message="SECURITY_EVENT"]',
        "1",
    ),
    (
        "PIIDetectionMetric",
        SECURITY_NAMESPACE,
        "PIIDetected",
        '[timestamp, requestId, level="info", message="PII detected and tokenized"]',
        "1",
    ),
]

COST_PER_SESSION_THRESHOLD = 0.05
SYNTHETIC_SUCCESS_THRESHOLD = 0.8


class MonitoringAlertingStack(Construct):
    """
    CloudWatch dashboard, alarms, log metric filters and synthetic monitoring.

    Exposes alert_topic, dashboard, alarms and synthetic_function. Alarms passed as
    service_alarms are wired to the topic and shown on the alarm status widget.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: EnvironmentConfig,
        kms_key: kms.IKey,
        api: apigateway.RestApi,
        ecs_cluster: ecs.ICluster,
        ecs_service: ecs.FargateService,
        database: rds.DatabaseCluster,
        redis_cluster_id: str,
        lambda_functions: list[lambda_.IFunction],
        mindsdb_log_group: logs.ILogGroup,
        service_alarms: list[cloudwatch.Alarm] | None = None,
    ) -> None:
        super().__init__(scope, construct_id)

        self._config = config
        region = Stack.of(self).region
        dashboard_name = f"MindsDB-RAG-{config.environment}"

        # =================================================================
        # SNS Topic for Alerts
        # =================================================================

        self.alert_topic = sns.Topic(
            self,
            "AlertTopic",
            topic_name=config.name("alerts"),
            display_name="MindsDB RAG Alerts",
            master_key=kms_key,
        )

        if config.alert_email:
            self.alert_topic.add_subscription(
                sns_subscriptions.EmailSubscription(config.alert_email)
            )

        # CloudWatch must be able to publish to the encrypted topic
        kms_key.grant_encrypt_decrypt(iam.ServicePrincipal("cloudwatch.amazonaws.com"))

        alert_action = cw_actions.SnsAction(self.alert_topic)

        # =================================================================
        # Metrics
        # =================================================================

        # API Gateway metrics
        api_dimensions = {"ApiName": api.rest_api_name}
        api_requests = self._metric("AWS/ApiGateway", "Count", api_dimensions, "Sum")
        api_latency = self._metric("AWS/ApiGateway", "Latency", api_dimensions, "Average")
        api_4xx = self._metric("AWS/ApiGateway", "4XXError", api_dimensions, "Sum")
        api_5xx = self._metric("AWS/ApiGateway", "5XXError", api_dimensions, "Sum")

        # ECS metrics
        ecs_dimensions = {
            "ClusterName": ecs_cluster.cluster_name,
            "ServiceName": ecs_service.service_name,
        }
        ecs_cpu = self._metric("AWS/ECS", "CPUUtilization", ecs_dimensions, "Average")
        ecs_memory = self._metric("AWS/ECS", "MemoryUtilization", ecs_dimensions, "Average")
        ecs_running_tasks = cloudwatch.Metric(
            namespace="ECS/ContainerInsights",
            metric_name="RunningTaskCount",
            dimensions_map=ecs_dimensions,
            statistic="Average",
            period=Duration.minutes(5),
        )

        # Database metrics
        db_dimensions = {"DBClusterIdentifier": database.cluster_identifier}
        db_cpu = self._metric("AWS/RDS", "CPUUtilization", db_dimensions, "Average")
        db_connections = self._metric("AWS/RDS", "DatabaseConnections", db_dimensions, "Average")
        db_read_latency = self._metric("AWS/RDS", "ReadLatency", db_dimensions, "Average")
        db_write_latency = self._metric("AWS/RDS", "WriteLatency", db_dimensions, "Average")

        # Redis metrics
        redis_dimensions = {"CacheClusterId": redis_cluster_id}
        redis_cpu = self._metric("AWS/ElastiCache", "CPUUtilization", redis_dimensions, "Average")
        redis_evictions = self._metric("AWS/ElastiCache", "Evictions", redis_dimensions, "Sum")
        redis_memory = self._metric(
            "AWS/ElastiCache", "DatabaseMemoryUsagePercentage", redis_dimensions, "Average"
        )

        # Lambda metrics
        lambda_metrics = [(fn, self._create_lambda_metrics(fn)) for fn in lambda_functions]

        # Business metrics
        sessions_per_minute = cloudwatch.Metric(
            namespace=BUSINESS_NAMESPACE,
            metric_name="SessionsPerMinute",
            statistic="Sum",
            period=Duration.minutes(1),
        )
        cost_per_session = cloudwatch.Metric(
            namespace=BUSINESS_NAMESPACE,
            metric_name="CostPerSession",
            statistic="Average",
            period=Duration.minutes(15),
        )
        successful_checkouts = self._metric(BUSINESS_NAMESPACE, "SuccessfulCheckouts", None, "Sum")
        failed_checkouts = self._metric(BUSINESS_NAMESPACE, "FailedCheckouts", None, "Sum")
        active_sessions = self._metric(BUSINESS_NAMESPACE, "ActiveSessions", None, "Maximum")

        synthetic_success = cloudwatch.Metric(
            namespace=SYNTHETIC_NAMESPACE,
            metric_name="HealthCheckSuccess",
            dimensions_map={"Environment": config.environment},
            statistic="Average",
            period=Duration.minutes(5),
        )
        synthetic_response_time = cloudwatch.Metric(
            namespace=SYNTHETIC_NAMESPACE,
            metric_name="HealthCheckResponseTime",
            dimensions_map={"Environment": config.environment},
            statistic="Average",
            period=Duration.minutes(5),
        )

        # =================================================================
        # Alarms
        # =================================================================

        self.alarms: list[cloudwatch.Alarm] = []

        self._add_alarm(
            "HighApiLatencyAlarm",
            alarm_name=config.name("high-api-latency"),
            alarm_description="API Gateway average latency exceeds 5 seconds",
            metric=api_latency,
            threshold=5000,
            evaluation_periods=2,
            alert_action=alert_action,
        )

        self._add_alarm(
            "HighErrorRateAlarm",
            alarm_name=config.name("high-error-rate"),
            alarm_description="API Gateway error rate (4XX + 5XX) exceeds 5% of requests",
            metric=cloudwatch.MathExpression(
                expression="(errors4xx + errors5xx) / requests * 100",
                using_metrics={
                    "errors4xx": api_4xx,
                    "errors5xx": api_5xx,
                    "requests": api_requests,
                },
                period=Duration.minutes(5),
            ),
            threshold=5,
            evaluation_periods=2,
            alert_action=alert_action,
        )

        self._add_alarm(
            "EcsHighCpuAlarm",
            alarm_name=config.name("ecs-high-cpu"),
            alarm_description="MindsDB ECS service CPU utilization exceeds 80%",
            metric=ecs_cpu,
            threshold=80,
            evaluation_periods=3,
            alert_action=alert_action,
        )

        self._add_alarm(
            "DbHighConnectionsAlarm",
            alarm_name=config.name("db-high-connections"),
            alarm_description="Aurora connections exceed 80",
            metric=db_connections,
            threshold=80,
            evaluation_periods=2,
            alert_action=alert_action,
        )

        self._add_alarm(
            "RedisHighCpuAlarm",
            alarm_name=config.name("redis-high-cpu"),
            alarm_description="Redis CPU utilization exceeds 75%",
            metric=redis_cpu,
            threshold=75,
            evaluation_periods=3,
            alert_action=alert_action,
        )

        self._add_alarm(
            "RedisEvictionsAlarm",
            alarm_name=config.name("redis-evictions"),
            alarm_description="Redis evicted more than 1000 keys in 5 minutes",
            metric=redis_evictions,
            threshold=1000,
            evaluation_periods=1,
            alert_action=alert_action,
        )

        for fn, metrics in lambda_metrics:
            node_id = fn.node.id
            self._add_alarm(
                f"{node_id}ErrorAlarm",
                alarm_description=f"{node_id} Lambda has errors",
                metric=metrics["errors"],
                threshold=1,
                evaluation_periods=1,
                comparison_operator=cloudwatch.ComparisonOperator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD,
                alert_action=alert_action,
            )

        self.cost_alarm = self._add_alarm(
            "HighCostPerSessionAlarm",
            alarm_name=config.name("high-cost-per-session"),
            alarm_description=f"Average cost per session exceeds ${COST_PER_SESSION_THRESHOLD}",
            metric=cost_per_session,
            threshold=COST_PER_SESSION_THRESHOLD,
            evaluation_periods=2,
            alert_action=alert_action,
        )

        # =================================================================
        # Log Metric Filters
        # =================================================================

        for filter_id, namespace, metric_name, pattern, metric_value in LOG_METRIC_FILTERS:
            logs.MetricFilter(
                self,
                filter_id,
                log_group=mindsdb_log_group,
                metric_namespace=namespace,
                metric_name=metric_name,
                filter_pattern=logs.FilterPattern.literal(pattern),
                metric_value=metric_value,
            )

        # =================================================================
        # Synthetic Monitoring
        # =================================================================

        synthetic_role = iam.Role(
            self,
            "SyntheticMonitorRole",
            assumed_by=iam.ServicePrincipal("lambda.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AWSLambdaBasicExecutionRole"
                ),
            ],
        )
        # PutMetricData has no resource-level permissions; scope by namespace instead
        synthetic_role.add_to_policy(
            iam.PolicyStatement(
                actions=["cloudwatch:PutMetricData"],
                resources=["*"],
                conditions={"StringEquals": {"cloudwatch:namespace": SYNTHETIC_NAMESPACE}},
            )
        )

        self.synthetic_function = create_python_lambda(
            self,
            "SyntheticMonitorFunction",
            function_name=config.name("synthetic-monitor"),
            handler="handler.handler",
            code_path=FUNCTIONS_DIR / "synthetic-monitor",
            role=synthetic_role,
            timeout_seconds=30,
            memory_size=256,
            environment={
                "API_ENDPOINT": api.url,
                "ENVIRONMENT": config.environment,
                "METRIC_NAMESPACE": SYNTHETIC_NAMESPACE,
            },
            description="Synthetic health check against the public API",
            log_retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=config.removal_policy,
        )

        events.Rule(
            self,
            "SyntheticMonitorSchedule",
            description="Run the synthetic API health check every 5 minutes",
            schedule=events.Schedule.rate(Duration.minutes(5)),
            targets=[events_targets.LambdaFunction(self.synthetic_function)],
        )

        self._add_alarm(
            "SyntheticHealthAlarm",
            alarm_name=config.name("synthetic-health"),
            alarm_description="Synthetic health check success rate below 80%",
            metric=synthetic_success,
            threshold=SYNTHETIC_SUCCESS_THRESHOLD,
            evaluation_periods=2,
            comparison_operator=cloudwatch.ComparisonOperator.LESS_THAN_THRESHOLD,
            treat_missing_data=cloudwatch.TreatMissingData.BREACHING,
            alert_action=alert_action,
        )

        # Alarms owned by other constructs notify the same topic
        for alarm in service_alarms or []:
            alarm.add_alarm_action(alert_action)
            alarm.add_ok_action(alert_action)
            self.alarms.append(alarm)

        # =================================================================
        # Dashboard
        # =================================================================

        self.dashboard = cloudwatch.Dashboard(
            self,
            "Dashboard",
            dashboard_name=dashboard_name,
            default_interval=Duration.hours(1),
        )

        # Row 1: API Gateway
        self.dashboard.add_widgets(
            cloudwatch.GraphWidget(
                title="API Gateway Requests & Latency",
                left=[api_requests],
                right=[api_latency],
                width=12,
                height=6,
            ),
            cloudwatch.GraphWidget(
                title="API Gateway Errors",
                left=[api_4xx, api_5xx],
                width=12,
                height=6,
            ),
        )

        # Row 2: ECS Service
        self.dashboard.add_widgets(
            cloudwatch.GraphWidget(
                title="MindsDB Service CPU & Memory",
                left=[ecs_cpu, ecs_memory],
                left_y_axis=cloudwatch.YAxisProps(label="Percent", min=0, max=100),
                width=12,
                height=6,
            ),
            cloudwatch.GraphWidget(
                title="MindsDB Running Tasks",
                left=[ecs_running_tasks],
                width=12,
                height=6,
            ),
        )

        # Row 3: Database & Cache
        self.dashboard.add_widgets(
            cloudwatch.GraphWidget(
                title="Database CPU & Connections",
                left=[db_cpu],
                right=[db_connections],
                width=8,
                height=6,
            ),
            cloudwatch.GraphWidget(
                title="Database Latency",
                left=[db_read_latency, db_write_latency],
                left_y_axis=cloudwatch.YAxisProps(label="Seconds", min=0),
                width=8,
                height=6,
            ),
            cloudwatch.GraphWidget(
                title="Redis CPU, Evictions & Memory",
                left=[redis_cpu, redis_memory],
                right=[redis_evictions],
                width=8,
                height=6,
            ),
        )

        # Row 4: Lambda
        if lambda_metrics:
            self.dashboard.add_widgets(
                cloudwatch.GraphWidget(
                    title="Lambda Duration",
                    left=[metrics["duration"] for _, metrics in lambda_metrics],
                    width=12,
                    height=6,
                ),
                cloudwatch.GraphWidget(
                    title="Lambda Errors",
                    left=[metrics["errors"] for _, metrics in lambda_metrics],
                    width=12,
                    height=6,
                ),
            )

        # Row 5: Business metrics
        self.dashboard.add_widgets(
            cloudwatch.GraphWidget(
                title="Sessions & Cost",
                left=[sessions_per_minute],
                right=[cost_per_session],
                width=8,
                height=6,
            ),
            cloudwatch.GraphWidget(
                title="Checkouts",
                left=[successful_checkouts, failed_checkouts],
                width=8,
                height=6,
            ),
            cloudwatch.SingleValueWidget(
                title="Cost per Session",
                metrics=[cost_per_session],
                width=4,
                height=6,
            ),
            cloudwatch.SingleValueWidget(
                title="Active Sessions",
                metrics=[active_sessions],
                width=4,
                height=6,
            ),
        )

        # Row 6: Synthetic checks
        self.dashboard.add_widgets(
            cloudwatch.GraphWidget(
                title="Synthetic Health Check",
                left=[synthetic_success],
                right=[synthetic_response_time],
                width=24,
                height=6,
            ),
        )

        # Row 7: Alarm Status
        self.dashboard.add_widgets(
            cloudwatch.AlarmStatusWidget(
                title="Alarm Status",
                alarms=self.alarms,
                width=24,
                height=4,
            ),
        )

        # =================================================================
        # Outputs
        # =================================================================

        CfnOutput(
            self,
            "AlertTopicArn",
            value=self.alert_topic.topic_arn,
            description="SNS Topic ARN for alerts",
        )

        CfnOutput(
            self,
            "DashboardUrl",
            value=f"https://{region}.console.aws.amazon.com/cloudwatch/home?region={region}#dashboards:name={dashboard_name}",
            description="CloudWatch Dashboard URL",
        )

        CfnOutput(
            self,
            "CostAlarmArn",
            value=self.cost_alarm.alarm_arn,
            description="Cost per session alarm ARN",
        )

    def _metric(
        self,
        namespace: str,
        metric_name: str,
        dimensions: dict[str, str] | None,
        statistic: str,
    ) -> cloudwatch.Metric:
        return cloudwatch.Metric(
            namespace=namespace,
            metric_name=metric_name,
            dimensions_map=dimensions,
            statistic=statistic,
            period=Duration.minutes(5),
        )

    def _add_alarm(
        self,
        construct_id: str,
        *,
        alert_action: cw_actions.SnsAction,
        comparison_operator: cloudwatch.ComparisonOperator = (
            cloudwatch.ComparisonOperator.GREATER_THAN_THRESHOLD
        ),
        treat_missing_data: cloudwatch.TreatMissingData = cloudwatch.TreatMissingData.NOT_BREACHING,
        **kwargs,
    ) -> cloudwatch.Alarm:
        """Create an alarm that notifies the alert topic on ALARM and OK."""
        alarm = cloudwatch.Alarm(
            self,
            construct_id,
            comparison_operator=comparison_operator,
            treat_missing_data=treat_missing_data,
            **kwargs,
        )
        alarm.add_alarm_action(alert_action)
        alarm.add_ok_action(alert_action)
        self.alarms.append(alarm)
        return alarm

    def _create_lambda_metrics(self, fn: lambda_.IFunction) -> dict[str, cloudwatch.Metric]:
        """Create standard metrics for a Lambda function."""
        return {
            "errors": cloudwatch.Metric(
                namespace="AWS/Lambda",
                metric_name="Errors",
                dimensions_map={"FunctionName": fn.function_name},
                statistic="Sum",
                period=Duration.minutes(5),
            ),
            "duration": cloudwatch.Metric(
                namespace="AWS/Lambda",
                metric_name="Duration",
                dimensions_map={"FunctionName": fn.function_name},
                statistic="Average",
                period=Duration.minutes(5),
            ),
        }
