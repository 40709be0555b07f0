"""
Synthetic health monitor for the public API.

Runs on a schedule, calls GET <API_ENDPOINT>/health and publishes
HealthCheckResponseTime and HealthCheckSuccess to CloudWatch.
"""

import json
import logging
import os
import time

import boto3
import httpx

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))

# Configuration from environment
API_ENDPOINT = os.environ.get("API_ENDPOINT", "")
ENVIRONMENT = os.environ.get("ENVIRONMENT", "dev")
METRIC_NAMESPACE = os.environ.get("METRIC_NAMESPACE", "MindsDB/RAG/Synthetic")
TIMEOUT_SECONDS = float(os.environ.get("TIMEOUT_SECONDS", "10"))


def handler(event: dict, context) -> dict:
    if not API_ENDPOINT:
        logger.error("API_ENDPOINT not configured")
        return {"statusCode": 500, "body": "API_ENDPOINT not configured"}

    url = f"{API_ENDPOINT.rstrip('/')}/health"
    started = time.monotonic()
    status_code = None

    try:
        response = httpx.get(url, timeout=TIMEOUT_SECONDS)
        status_code = response.status_code
    except httpx.HTTPError as e:
        logger.warning("Health check request to %s failed: %s", url, e)

    response_time_ms = (time.monotonic() - started) * 1000
    success = status_code == 200

    publish_metrics(response_time_ms, success)
    logger.info(
        "Health check %s: status=%s time=%.0fms",
        "passed" if success else "failed",
        status_code,
        response_time_ms,
    )

    return {
        "statusCode": 200 if success else 503,
        "body": json.dumps(
            {
                "success": success,
                "status_code": status_code,
                "response_time_ms": round(response_time_ms),
            }
        ),
    }


def publish_metrics(response_time_ms: float, success: bool) -> None:
    dimensions = [{"Name": "Environment", "Value": ENVIRONMENT}]
    cloudwatch = boto3.client("cloudwatch")
    cloudwatch.put_metric_data(
        Namespace=METRIC_NAMESPACE,
        MetricData=[
            {
                "MetricName": "HealthCheckResponseTime",
                "Dimensions": dimensions,
                "Value": response_time_ms,
                "Unit": "Milliseconds",
            },
            {
                "MetricName": "HealthCheckSuccess",
                "Dimensions": dimensions,
                "Value": 1.0 if success else 0.0,
                "Unit": "Count",
            },
        ],
    )
