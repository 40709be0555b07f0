"""
Tests for the synthetic health monitor Lambda.
"""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
from conftest import load_handler


@pytest.fixture
def monitor(monkeypatch):
    monkeypatch.setenv("API_ENDPOINT", "https://api.example.com/dev/")
    monkeypatch.setenv("ENVIRONMENT", "staging")
    monkeypatch.setenv("METRIC_NAMESPACE", "MindsDB/RAG/Synthetic")
    return load_handler("synthetic-monitor")


@pytest.fixture
def mock_cloudwatch(monitor):
    with patch.object(monitor, "boto3") as mock_boto3:
        cloudwatch = MagicMock()
        mock_boto3.client.return_value = cloudwatch
        yield cloudwatch


def _metric_values(cloudwatch: MagicMock) -> dict:
    call = cloudwatch.put_metric_data.call_args.kwargs
    assert call["Namespace"] == "MindsDB/RAG/Synthetic"
    for datum in call["MetricData"]:
        assert datum["Dimensions"] == [{"Name": "Environment", "Value": "staging"}]
    return {datum["MetricName"]: datum["Value"] for datum in call["MetricData"]}


class TestSyntheticMonitor:
    """Tests for the scheduled health check."""

    def test_healthy_api(self, monitor, mock_cloudwatch):
        """Test a 200 response publishes success."""
        with patch.object(monitor.httpx, "get") as mock_get:
            mock_get.return_value = MagicMock(status_code=200)

            result = monitor.handler({}, None)

        mock_get.assert_called_once_with(
            "https://api.example.com/dev/health", timeout=monitor.TIMEOUT_SECONDS
        )
        assert result["statusCode"] == 200
        assert json.loads(result["body"])["success"] is True
        metrics = _metric_values(mock_cloudwatch)
        assert metrics["HealthCheckSuccess"] == 1.0
        assert metrics["HealthCheckResponseTime"] >= 0

    def test_unhealthy_status(self, monitor, mock_cloudwatch):
        """Test a non-200 response publishes failure."""
        with patch.object(monitor.httpx, "get") as mock_get:
            mock_get.return_value = MagicMock(status_code=503)

            result = monitor.handler({}, None)

        assert result["statusCode"] == 503
        assert json.loads(result["body"])["status_code"] == 503
        assert _metric_values(mock_cloudwatch)["HealthCheckSuccess"] == 0.0

    def test_request_error(self, monitor, mock_cloudwatch):
        """Test connection failures still publish metrics."""
        with patch.object(monitor.httpx, "get") as mock_get:
            mock_get.side_effect = httpx.ConnectError("connection refused")

            result = monitor.handler({}, None)

        body = json.loads(result["body"])
        assert result["statusCode"] == 503
        assert body["success"] is False
        assert body["status_code"] is None
        assert _metric_values(mock_cloudwatch)["HealthCheckSuccess"] == 0.0

    def test_missing_endpoint(self, monkeypatch):
        """Test nothing is published without an endpoint."""
        monkeypatch.delenv("API_ENDPOINT", raising=False)
        monitor = load_handler("synthetic-monitor")

        with patch.object(monitor, "boto3") as mock_boto3:
            result = monitor.handler({}, None)

        assert result["statusCode"] == 500
        mock_boto3.client.assert_not_called()
