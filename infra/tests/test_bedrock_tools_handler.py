"""
Tests for the Bedrock tools Lambda handler.
"""

import base64
import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
from conftest import load_handler

MINDSDB_ENDPOINT = "http://mindsdb.internal"


@pytest.fixture
def tools(monkeypatch):
    """Load the handler with a MindsDB endpoint configured."""
    monkeypatch.setenv("MINDSDB_ENDPOINT", MINDSDB_ENDPOINT)
    monkeypatch.setenv("ENVIRONMENT", "test")
    return load_handler("bedrock-tools")


@pytest.fixture
def unconfigured_tools(monkeypatch):
    monkeypatch.delenv("MINDSDB_ENDPOINT", raising=False)
    return load_handler("bedrock-tools")


def _response(status_code=200, payload=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    return response


def _agent_event(api_path="/semantic-retrieval", properties=None, session_attributes=None):
    return {
        "messageVersion": "1.0",
        "actionGroup": "MindsDBTools",
        "apiPath": api_path,
        "httpMethod": "POST",
        "sessionId": "session-1",
        "sessionAttributes": session_attributes or {},
        "requestBody": {
            "content": {
                "application/json": {
                    "properties": properties
                    or [
                        {"name": "query", "type": "string", "value": "waterproof jackets"},
                        {"name": "merchant_id", "type": "string", "value": "merchant-1"},
                    ]
                }
            }
        },
    }


class TestApiRequests:
    """Tests for API Gateway payloads."""

    def test_mapping_template_payload(self, tools):
        """Test a mapping-template payload is forwarded to MindsDB."""
        event = {
            "toolName": "semantic_retrieval",
            "input": {"query": "jackets"},
            "context": {"merchant_id": "merchant-1", "user_id": "user-1"},
        }
        with patch.object(tools.httpx, "post") as mock_post:
            mock_post.return_value = _response(payload={"documents": []})

            result = tools.handler(event, None)

        assert result["statusCode"] == 200
        body = json.loads(result["body"])
        assert body["success"] is True
        assert body["data"] == {"documents": []}
        assert body["metadata"]["tool_name"] == "semantic_retrieval"
        mock_post.assert_called_once_with(
            f"{MINDSDB_ENDPOINT}/api/bedrock-agent/tools/semantic_retrieval",
            json={
                "input": {"query": "jackets"},
                "context": {"merchant_id": "merchant-1", "user_id": "user-1"},
            },
            timeout=tools.REQUEST_TIMEOUT_SECONDS,
        )

    def test_proxy_body_with_merchant_header(self, tools):
        """Test merchant_id falls back to the X-Merchant-Id header."""
        event = {
            "headers": {"X-Merchant-Id": "merchant-2"},
            "body": json.dumps({"toolName": "product_prediction", "input": {"sku": "A1"}}),
        }
        with patch.object(tools.httpx, "post") as mock_post:
            mock_post.return_value = _response(payload={"score": 0.9})

            result = tools.handler(event, None)

        assert result["statusCode"] == 200
        sent = mock_post.call_args.kwargs["json"]
        assert sent["context"]["merchant_id"] == "merchant-2"

    def test_base64_proxy_body(self, tools):
        body = {"toolName": "semantic_retrieval", "input": {"query": "boots"}}
        event = {
            "headers": {"X-Merchant-Id": "merchant-2"},
            "body": base64.b64encode(json.dumps(body).encode()).decode(),
            "isBase64Encoded": True,
        }
        with patch.object(tools.httpx, "post") as mock_post:
            mock_post.return_value = _response(payload={"documents": []})

            result = tools.handler(event, None)

        assert result["statusCode"] == 200
        assert mock_post.call_args.kwargs["json"]["input"] == {"query": "boots"}

    def test_claim_overrides_body_merchant(self, tools):
        """Test the authenticated merchant wins over body context and headers."""
        event = {
            "headers": {"X-Merchant-Id": "merchant-8"},
            "body": json.dumps(
                {
                    "toolName": "semantic_retrieval",
                    "input": {"merchant_id": "merchant-7"},
                    "context": {"merchant_id": "merchant-9", "user_id": "user-9"},
                }
            ),
            "requestContext": {
                "authorizer": {"claims": {"sub": "user-1", "custom:merchant_id": "merchant-1"}}
            },
        }
        with patch.object(tools.httpx, "post") as mock_post:
            mock_post.return_value = _response()

            tools.handler(event, None)

        sent = mock_post.call_args.kwargs["json"]["context"]
        assert sent["merchant_id"] == "merchant-1"
        assert sent["user_id"] == "user-1"

    @pytest.mark.parametrize(
        "event,message",
        [
            ({"input": {}, "context": {"merchant_id": "m"}}, "Missing tool name"),
            (
                {"toolName": "drop_tables", "context": {"merchant_id": "m"}},
                "Unknown tool: drop_tables",
            ),
            ({"toolName": "semantic_retrieval", "input": {}}, "merchant_id is required"),
            ({"body": "{not json"}, "Request body must be valid JSON"),
            ({"body": "[1, 2]"}, "Request body must be a JSON object"),
        ],
    )
    def test_rejected_requests(self, tools, event, message):
        """Test malformed requests return 400 without calling MindsDB."""
        with patch.object(tools.httpx, "post") as mock_post:
            result = tools.handler(event, None)

        assert result["statusCode"] == 400
        assert json.loads(result["body"]) == {"success": False, "error": message}
        mock_post.assert_not_called()

    def test_mindsdb_error_returns_502(self, tools):
        """Test HTTP failures from MindsDB map to 502."""
        event = {"toolName": "semantic_retrieval", "context": {"merchant_id": "m"}}
        with patch.object(tools.httpx, "post") as mock_post:
            mock_post.side_effect = httpx.ConnectError("connection refused")

            result = tools.handler(event, None)

        assert result["statusCode"] == 502
        assert json.loads(result["body"])["error"] == "MindsDB request failed"

    def test_missing_endpoint_returns_500(self, unconfigured_tools):
        """Test an unconfigured endpoint is an internal error."""
        event = {"toolName": "semantic_retrieval", "context": {"merchant_id": "m"}}

        result = unconfigured_tools.handler(event, None)

        assert result["statusCode"] == 500
        assert json.loads(result["body"])["error"] == "Internal server error"

    def test_cors_headers(self, tools):
        result = tools.handler({}, None)

        assert result["headers"]["Access-Control-Allow-Origin"] == "*"


class TestAgentRequests:
    """Tests for Bedrock Agent action-group events."""

    def test_agent_event_response_shape(self, tools):
        """Test agent events get the action-group response envelope."""
        event = _agent_event(session_attributes={"user_id": "user-9"})
        with patch.object(tools.httpx, "post") as mock_post:
            mock_post.return_value = _response(payload={"documents": ["doc-1"]})

            result = tools.handler(event, None)

        response = result["response"]
        assert result["messageVersion"] == "1.0"
        assert response["actionGroup"] == "MindsDBTools"
        assert response["apiPath"] == "/semantic-retrieval"
        assert response["httpStatusCode"] == 200
        body = json.loads(response["responseBody"]["application/json"]["body"])
        assert body["data"] == {"documents": ["doc-1"]}
        assert result["sessionAttributes"] == {"user_id": "user-9"}

        sent = mock_post.call_args.kwargs["json"]
        assert sent["input"] == {"query": "waterproof jackets", "merchant_id": "merchant-1"}
        assert sent["context"] == {
            "merchant_id": "merchant-1",
            "user_id": "user-9",
            "session_id": "session-1",
        }

    def test_merchant_from_session_attributes(self, tools):
        event = _agent_event(
            properties=[{"name": "query", "value": "boots"}],
            session_attributes={"merchant_id": "merchant-3"},
        )

        tool_name, tool_input, tool_context = tools.parse_agent_event(event)

        assert tool_name == "semantic_retrieval"
        assert tool_input == {"query": "boots"}
        assert tool_context["merchant_id"] == "merchant-3"

    def test_session_attributes_override_parameters(self, tools):
        event = _agent_event(session_attributes={"merchant_id": "merchant-3"})

        _, _, tool_context = tools.parse_agent_event(event)

        assert tool_context["merchant_id"] == "merchant-3"

    def test_null_request_body(self, tools):
        event = _agent_event(session_attributes={"merchant_id": "merchant-3"})
        event["requestBody"] = None

        tool_name, tool_input, _ = tools.parse_agent_event(event)

        assert tool_name == "semantic_retrieval"
        assert tool_input == {}

    def test_unknown_api_path(self, tools):
        """Test an unknown apiPath is rejected inside the agent envelope."""
        result = tools.handler(_agent_event(api_path="/delete-everything"), None)

        assert result["response"]["httpStatusCode"] == 400

    def test_health_check_tool_answered_locally(self, tools):
        """Test the health tool queries MindsDB status rather than a tool endpoint."""
        event = _agent_event(api_path="/health-check")
        with (
            patch.object(tools.httpx, "get") as mock_get,
            patch.object(tools.httpx, "post") as mock_post,
        ):
            mock_get.return_value = _response(status_code=200)

            result = tools.handler(event, None)

        body = json.loads(result["response"]["responseBody"]["application/json"]["body"])
        assert body["data"]["healthy"] is True
        mock_get.assert_called_once_with(f"{MINDSDB_ENDPOINT}/api/status", timeout=5.0)
        mock_post.assert_not_called()


class TestDocumentIngestion:
    """Tests for document ingestion requests."""

    def test_ingest_document(self, tools):
        event = {
            "action": "ingest_document",
            "bucket": "documents-bucket",
            "key": "merchant-1/catalog.pdf",
            "context": {"merchant_id": "merchant-1"},
        }
        with patch.object(tools.httpx, "post") as mock_post:
            mock_post.return_value = _response(payload={"documentId": "doc-1"})

            result = tools.handler(event, None)

        assert result["statusCode"] == 200
        assert json.loads(result["body"]) == {"documentId": "doc-1"}
        mock_post.assert_called_once_with(
            f"{MINDSDB_ENDPOINT}/api/documents/ingest",
            json={
                "bucket": "documents-bucket",
                "key": "merchant-1/catalog.pdf",
                "merchant_id": "merchant-1",
            },
            timeout=tools.REQUEST_TIMEOUT_SECONDS,
        )

    def test_ingest_requires_location(self, tools):
        event = {"action": "ingest_document", "context": {"merchant_id": "merchant-1"}}

        result = tools.handler(event, None)

        assert result["statusCode"] == 400
        assert json.loads(result["body"])["error"] == "bucket and key are required"


class TestHealthHandler:
    """Tests for the health endpoint."""

    def test_healthy(self, tools):
        with patch.object(tools.httpx, "get") as mock_get:
            mock_get.return_value = _response(status_code=200)

            result = tools.health_handler({}, None)

        body = json.loads(result["body"])
        assert result["statusCode"] == 200
        assert body["status"] == "healthy"
        assert body["environment"] == "test"
        assert body["mindsdb"]["status_code"] == 200

    def test_degraded_when_mindsdb_unreachable(self, tools):
        with patch.object(tools.httpx, "get") as mock_get:
            mock_get.side_effect = httpx.ConnectTimeout("timed out")

            result = tools.health_handler({}, None)

        body = json.loads(result["body"])
        assert result["statusCode"] == 200
        assert body["status"] == "degraded"
        assert body["mindsdb"] == {"healthy": False, "error": "timed out"}

    def test_degraded_without_endpoint(self, unconfigured_tools):
        result = unconfigured_tools.health_handler({}, None)

        assert json.loads(result["body"])["status"] == "degraded"
