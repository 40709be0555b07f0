"""
Tests for the root MindsDB RAG stack: foundation resources and composition.
"""

from aws_cdk.assertions import Match, Template


class TestEncryptionAndNetwork:
    """Tests for the KMS key, VPC and endpoints."""

    def test_kms_key_rotates(self, dev_template: Template):
        dev_template.has_resource_properties("AWS::KMS::Key", {"EnableKeyRotation": True})
        dev_template.has_resource_properties(
            "AWS::KMS::Alias", {"AliasName": "alias/mindsdb-rag-dev"}
        )

    def test_vpc_has_three_subnet_tiers(self, dev_template: Template):
        """Test public, private and isolated database subnets across three AZs."""
        dev_template.has_resource_properties(
            "AWS::EC2::VPC",
            {"EnableDnsHostnames": True, "EnableDnsSupport": True},
        )
        dev_template.resource_count_is("AWS::EC2::Subnet", 9)

    def test_dev_uses_single_nat_gateway(self, dev_template: Template):
        dev_template.resource_count_is("AWS::EC2::NatGateway", 1)

    def test_production_uses_two_nat_gateways(self, production_template: Template):
        production_template.resource_count_is("AWS::EC2::NatGateway", 2)

    def test_vpc_endpoints(self, dev_template: Template):
        """Test the S3 gateway plus seven interface endpoints with private DNS."""
        dev_template.resource_count_is("AWS::EC2::VPCEndpoint", 8)
        dev_template.has_resource_properties(
            "AWS::EC2::VPCEndpoint",
            {"VpcEndpointType": "Gateway"},
        )
        interface_endpoints = dev_template.find_resources(
            "AWS::EC2::VPCEndpoint",
            {"Properties": {"VpcEndpointType": "Interface"}},
        )
        assert len(interface_endpoints) == 7
        for endpoint in interface_endpoints.values():
            assert endpoint["Properties"]["PrivateDnsEnabled"] is True


class TestAurora:
    """Tests for the Aurora PostgreSQL cluster."""

    def test_cluster_configuration(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::RDS::DBCluster",
            {
                "Engine": "aurora-postgresql",
                "EngineVersion": "15.4",
                "StorageEncrypted": True,
                "KmsKeyId": Match.any_value(),
                "BackupRetentionPeriod": 7,
                "PreferredBackupWindow": "03:00-04:00",
                "PreferredMaintenanceWindow": "sun:04:00-sun:05:00",
                "EnableCloudwatchLogsExports": ["postgresql"],
            },
        )

    def test_generated_credentials_secret(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::SecretsManager::Secret",
            {
                "Name": "mindsdb-rag/aurora-credentials",
                "KmsKeyId": Match.any_value(),
                "GenerateSecretString": Match.object_like(
                    {"SecretStringTemplate": '{"username":"postgres"}'}
                ),
            },
        )

    def test_parameter_group_logs_statements(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::RDS::DBClusterParameterGroup",
            {
                "Parameters": {
                    "log_statement": "all",
                    "log_min_duration_statement": "1000",
                }
            },
        )

    def test_dev_has_writer_only(self, dev_template: Template):
        dev_template.resource_count_is("AWS::RDS::DBInstance", 1)
        dev_template.has_resource_properties(
            "AWS::RDS::DBInstance", {"DBInstanceClass": "db.r6g.large"}
        )

    def test_production_has_reader_and_protection(self, production_template: Template):
        production_template.resource_count_is("AWS::RDS::DBInstance", 2)
        production_template.has_resource_properties(
            "AWS::RDS::DBCluster",
            {"DeletionProtection": True, "BackupRetentionPeriod": 30},
        )

    def test_database_security_group_has_no_egress_to_internet(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::EC2::SecurityGroup",
            {
                "GroupDescription": "Security group for Aurora PostgreSQL",
                "SecurityGroupEgress": [
                    Match.object_like({"CidrIp": "255.255.255.255/32"}),
                ],
            },
        )


class TestRedis:
    """Tests for ElastiCache Redis."""

    def test_cache_cluster(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::ElastiCache::CacheCluster",
            {
                "ClusterName": "mindsdb-rag-redis-dev",
                "Engine": "redis",
                "EngineVersion": "7.0",
                "CacheNodeType": "cache.t4g.medium",
                "NumCacheNodes": 1,
                "PreferredMaintenanceWindow": "sun:05:00-sun:06:00",
                "SnapshotRetentionLimit": 5,
                "SnapshotWindow": "03:00-05:00",
            },
        )

    def test_parameter_group_uses_lru_eviction(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::ElastiCache::ParameterGroup",
            {
                "CacheParameterGroupFamily": "redis7",
                "Properties": {"maxmemory-policy": "allkeys-lru"},
            },
        )

    def test_cluster_depends_on_subnet_and_parameter_groups(self, dev_template: Template):
        subnet_groups = dev_template.find_resources("AWS::ElastiCache::SubnetGroup")
        parameter_groups = dev_template.find_resources("AWS::ElastiCache::ParameterGroup")
        (cluster,) = dev_template.find_resources("AWS::ElastiCache::CacheCluster").values()

        depends_on = set(cluster["DependsOn"])
        assert set(subnet_groups) <= depends_on
        assert set(parameter_groups) <= depends_on

    def test_redis_config_secret(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::SecretsManager::Secret",
            {"Name": "mindsdb-rag/redis-config", "KmsKeyId": Match.any_value()},
        )


class TestEcsCluster:
    """Tests for the ECS cluster."""

    def test_cluster_name_and_insights(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::ECS::Cluster",
            {
                "ClusterName": "mindsdb-rag-dev",
                "ClusterSettings": [{"Name": "containerInsights", "Value": "enabled"}],
            },
        )

    def test_fargate_capacity_providers(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::ECS::ClusterCapacityProviderAssociations",
            {"CapacityProviders": Match.array_with(["FARGATE", "FARGATE_SPOT"])},
        )


class TestStorage:
    """Tests for S3 buckets, secrets and the session table."""

    def test_three_private_kms_buckets(self, dev_template: Template):
        buckets = dev_template.find_resources("AWS::S3::Bucket")
        assert len(buckets) == 3
        for bucket in buckets.values():
            props = bucket["Properties"]
            encryption = props["BucketEncryption"]["ServerSideEncryptionConfiguration"][0]
            assert encryption["ServerSideEncryptionByDefault"]["SSEAlgorithm"] == "aws:kms"
            assert props["PublicAccessBlockConfiguration"] == {
                "BlockPublicAcls": True,
                "BlockPublicPolicy": True,
                "IgnorePublicAcls": True,
                "RestrictPublicBuckets": True,
            }

    def test_buckets_enforce_ssl(self, dev_template: Template):
        dev_template.resource_count_is("AWS::S3::BucketPolicy", 3)
        dev_template.has_resource_properties(
            "AWS::S3::BucketPolicy",
            {
                "PolicyDocument": {
                    "Statement": Match.array_with(
                        [
                            Match.object_like(
                                {
                                    "Effect": "Deny",
                                    "Condition": {"Bool": {"aws:SecureTransport": "false"}},
                                }
                            )
                        ]
                    )
                }
            },
        )

    def test_documents_bucket_expires_old_versions(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::S3::Bucket",
            {
                "VersioningConfiguration": {"Status": "Enabled"},
                "LifecycleConfiguration": {
                    "Rules": [
                        Match.object_like(
                            {
                                "Id": "ExpireOldVersions",
                                "NoncurrentVersionExpiration": {"NoncurrentDays": 30},
                            }
                        )
                    ]
                },
            },
        )

    def test_audit_bucket_archives_and_expires(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::S3::Bucket",
            {
                "LifecycleConfiguration": {
                    "Rules": [
                        Match.object_like(
                            {
                                "ExpirationInDays": 2555,
                                "Transitions": [
                                    {"StorageClass": "STANDARD_IA", "TransitionInDays": 30},
                                    {"StorageClass": "GLACIER", "TransitionInDays": 90},
                                ],
                            }
                        )
                    ]
                },
            },
        )

    def test_mindsdb_api_key_secret(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::SecretsManager::Secret",
            {
                "Name": "mindsdb-rag/mindsdb-api-key",
                "GenerateSecretString": Match.object_like(
                    {
                        "SecretStringTemplate": '{"username": "mindsdb"}',
                        "GenerateStringKey": "apiKey",
                        "PasswordLength": 32,
                    }
                ),
            },
        )

    def test_bedrock_config_secret(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::SecretsManager::Secret",
            {"Name": "mindsdb-rag/bedrock-config", "SecretString": Match.any_value()},
        )

    def test_session_table(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::DynamoDB::Table",
            {
                "TableName": "mindsdb-rag-sessions-dev",
                "KeySchema": [
                    {"AttributeName": "merchant_id", "KeyType": "HASH"},
                    {"AttributeName": "session_id", "KeyType": "RANGE"},
                ],
                "BillingMode": "PAY_PER_REQUEST",
                "SSESpecification": Match.object_like({"SSEEnabled": True, "SSEType": "KMS"}),
                "TimeToLiveSpecification": {"AttributeName": "ttl", "Enabled": True},
                "PointInTimeRecoverySpecification": {"PointInTimeRecoveryEnabled": True},
                "GlobalSecondaryIndexes": [
                    Match.object_like(
                        {
                            "IndexName": "SessionIdIndex",
                            "KeySchema": [{"AttributeName": "session_id", "KeyType": "HASH"}],
                        }
                    ),
                    Match.object_like(
                        {
                            "IndexName": "UserIdIndex",
                            "KeySchema": [
                                {"AttributeName": "user_id", "KeyType": "HASH"},
                                {"AttributeName": "created_at", "KeyType": "RANGE"},
                            ],
                        }
                    ),
                ],
            },
        )

    def test_dev_destroys_stateful_resources(self, dev_template: Template):
        dev_template.has_resource("AWS::DynamoDB::Table", {"DeletionPolicy": "Delete"})

    def test_production_retains_stateful_resources(self, production_template: Template):
        production_template.has_resource("AWS::DynamoDB::Table", {"DeletionPolicy": "Retain"})
        production_template.has_resource("AWS::KMS::Key", {"DeletionPolicy": "Retain"})
        for bucket in production_template.find_resources("AWS::S3::Bucket").values():
            assert bucket["DeletionPolicy"] == "Retain"


class TestComposition:
    """Tests for how the root stack wires its components together."""

    def test_mindsdb_allowed_into_data_stores(self, dev_template: Template):
        for port in (5432, 6379):
            dev_template.has_resource_properties(
                "AWS::EC2::SecurityGroupIngress",
                {
                    "IpProtocol": "tcp",
                    "FromPort": port,
                    "ToPort": port,
                    "SourceSecurityGroupId": Match.any_value(),
                },
            )

    def test_bedrock_agent_is_optional(
        self, dev_template: Template, production_template: Template
    ):
        dev_template.resource_count_is("AWS::Bedrock::Agent", 0)
        production_template.resource_count_is("AWS::Bedrock::Agent", 1)

    def test_service_alarms_notify_alert_topic(self, dev_template: Template):
        dev_template.has_resource_properties(
            "AWS::CloudWatch::Alarm",
            {
                "AlarmName": "mindsdb-rag-mindsdb-high-cpu-dev",
                "AlarmActions": [Match.any_value()],
                "OKActions": [Match.any_value()],
            },
        )

    def test_lambda_functions_get_internal_alb_endpoint(self, dev_stack, dev_template: Template):
        endpoint = dev_stack.resolve(dev_stack.mindsdb_service.internal_endpoint)
        dev_template.has_resource_properties(
            "AWS::Lambda::Function",
            {
                "FunctionName": "mindsdb-rag-tools-dev",
                "Environment": {"Variables": Match.object_like({"MINDSDB_ENDPOINT": endpoint})},
            },
        )

    def test_outputs(self, dev_template: Template):
        outputs = dev_template.find_outputs("*")
        assert {
            "VpcId",
            "ECSClusterName",
            "DatabaseEndpoint",
            "RedisEndpoint",
            "KMSKeyId",
            "MindsDBInternalEndpoint",
            "MindsDBServiceName",
            "SessionTableName",
        } <= set(outputs)
