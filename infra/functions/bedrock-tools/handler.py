"""
Lambda handler for Bedrock Agent tools.

Forwards tool calls to the MindsDB service behind the internal load balancer.

Accepts three payload shapes:
- Bedrock Agent action-group events (``actionGroup``/``apiPath``/``requestBody``)
- API Gateway mapping-template payloads (``toolName``/``input``/``context``)
- API Gateway proxy events whose JSON body carries the same fields

Document ingestion requests (``action: ingest_document``) arrive through the
``/v1/documents`` route and are forwarded to MindsDB's ingestion endpoint.
"""

import base64
import json
import logging
import os
import time
from datetime import datetime, timezone

import httpx

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))

# Configuration from environment
ENVIRONMENT = os.environ.get("ENVIRONMENT", "dev")
MINDSDB_ENDPOINT = os.environ.get("MINDSDB_ENDPOINT", "")
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "25"))

KNOWN_TOOLS = frozenset(
    {
        "semantic_retrieval",
        "product_prediction",
        "secure_checkout",
        "tool_health_check",
    }
)

# Bedrock Agent apiPath -> tool name
AGENT_API_PATHS = {
    "/semantic-retrieval": "semantic_retrieval",
    "/product-prediction": "product_prediction",
    "/process-checkout": "secure_checkout",
    "/health-check": "tool_health_check",
}

RESPONSE_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
}


class ToolRequestError(ValueError):
    """Raised when a tool request is malformed or not allowed."""


def handler(event: dict, context) -> dict:
    """Lambda entry point for tool execution."""
    is_agent_event = "actionGroup" in event or "apiPath" in event
    started = time.monotonic()

    try:
        if event.get("action") == "ingest_document":
            status_code, result = 200, ingest_document(event)
        else:
            if is_agent_event:
                tool_name, tool_input, tool_context = parse_agent_event(event)
            else:
                tool_name, tool_input, tool_context = parse_api_event(event)

            validate_tool_request(tool_name, tool_context)
            logger.info(
                "Executing tool %s for merchant %s", tool_name, tool_context["merchant_id"]
            )

            data = execute_tool(tool_name, tool_input, tool_context)
            status_code = 200
            result = {
                "success": True,
                "data": data,
                "metadata": {
                    "tool_name": tool_name,
                    "execution_time_ms": round((time.monotonic() - started) * 1000),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            }
    except ToolRequestError as e:
        logger.warning("Rejected tool request: %s", e)
        status_code, result = 400, {"success": False, "error": str(e)}
    except httpx.HTTPError as e:
        logger.error("MindsDB request failed: %s", e)
        status_code, result = 502, {"success": False, "error": "MindsDB request failed"}
    except Exception as e:
        logger.exception("Tool execution failed: %s", e)
        status_code, result = 500, {"success": False, "error": "Internal server error"}

    if is_agent_event:
        return format_agent_response(event, status_code, result)
    return {"statusCode": status_code, "headers": RESPONSE_HEADERS, "body": json.dumps(result)}


def health_handler(event: dict, context) -> dict:
    """Report function health and whether MindsDB answers its status endpoint."""
    mindsdb_status = check_mindsdb_health()
    body = {
        "status": "healthy" if mindsdb_status["healthy"] else "degraded",
        "service": "bedrock-tools",
        "environment": ENVIRONMENT,
        "mindsdb": mindsdb_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return {"statusCode": 200, "headers": RESPONSE_HEADERS, "body": json.dumps(body)}


def parse_agent_event(event: dict) -> tuple[str, dict, dict]:
    """Extract tool name, input and context from a Bedrock Agent action-group event."""
    api_path = event.get("apiPath", "")
    tool_name = AGENT_API_PATHS.get(api_path)
    if tool_name is None:
        raise ToolRequestError(f"Unknown agent API path: {api_path}")

    properties = (
        (event.get("requestBody") or {})
        .get("content", {})
        .get("application/json", {})
        .get("properties", [])
    )
    tool_input = {prop["name"]: prop.get("value") for prop in properties if "name" in prop}

    # Session attributes are set by the calling application, parameters by the model
    session_attributes = event.get("sessionAttributes") or {}
    tool_context = {
        "merchant_id": session_attributes.get("merchant_id") or tool_input.get("merchant_id"),
        "user_id": session_attributes.get("user_id") or tool_input.get("user_id"),
        "session_id": event.get("sessionId"),
    }
    return tool_name, tool_input, tool_context


def parse_api_event(event: dict) -> tuple[str, dict, dict]:
    """Extract tool name, input and context from an API Gateway payload."""
    payload = event
    if "body" in event:
        try:
            payload = json.loads(_request_body(event) or "{}")
        except ValueError as e:
            raise ToolRequestError("Request body must be valid JSON") from e

    if not isinstance(payload, dict):
        raise ToolRequestError("Request body must be a JSON object")

    tool_name = payload.get("toolName") or payload.get("tool_name")
    tool_input = payload.get("input") or {}
    tool_context = dict(payload.get("context") or {})

    if not isinstance(tool_input, dict):
        raise ToolRequestError("Tool input must be a JSON object")

    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = authorizer.get("claims") or {}
    if claims:
        # Authenticated callers only ever act for the merchant on their token
        tool_context["merchant_id"] = claims.get("custom:merchant_id")
        tool_context["user_id"] = claims.get("sub")
    else:
        headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}
        tool_context["merchant_id"] = (
            tool_context.get("merchant_id")
            or tool_input.get("merchant_id")
            or headers.get("x-merchant-id")
        )
    return tool_name, tool_input, tool_context


def _request_body(event: dict) -> str | None:
    """Proxy request body as text; binary media types arrive base64 encoded."""
    body = event["body"]
    if body and event.get("isBase64Encoded"):
        return base64.b64decode(body).decode("utf-8")
    return body


def validate_tool_request(tool_name: str | None, tool_context: dict) -> None:
    if not tool_name:
        raise ToolRequestError("Missing tool name")
    if tool_name not in KNOWN_TOOLS:
        raise ToolRequestError(f"Unknown tool: {tool_name}")
    if not tool_context.get("merchant_id"):
        raise ToolRequestError("merchant_id is required")


def execute_tool(tool_name: str, tool_input: dict, tool_context: dict) -> dict:
    """Run a tool. Health checks are answered locally, everything else by MindsDB."""
    if tool_name == "tool_health_check":
        return check_mindsdb_health()

    return post_to_mindsdb(
        f"/api/bedrock-agent/tools/{tool_name}",
        {"input": tool_input, "context": tool_context},
    )


def ingest_document(event: dict) -> dict:
    merchant_id = (event.get("context") or {}).get("merchant_id")
    if not merchant_id:
        raise ToolRequestError("merchant_id is required")
    if not event.get("bucket") or not event.get("key"):
        raise ToolRequestError("bucket and key are required")

    logger.info("Ingesting s3://%s/%s for merchant %s", event["bucket"], event["key"], merchant_id)
    return post_to_mindsdb(
        "/api/documents/ingest",
        {"bucket": event["bucket"], "key": event["key"], "merchant_id": merchant_id},
    )


def post_to_mindsdb(path: str, payload: dict) -> dict:
    if not MINDSDB_ENDPOINT:
        raise RuntimeError("MINDSDB_ENDPOINT not configured")

    response = httpx.post(
        f"{MINDSDB_ENDPOINT.rstrip('/')}{path}",
        json=payload,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    return response.json()


def check_mindsdb_health() -> dict:
    if not MINDSDB_ENDPOINT:
        return {"healthy": False, "error": "MINDSDB_ENDPOINT not configured"}

    started = time.monotonic()
    try:
        response = httpx.get(f"{MINDSDB_ENDPOINT.rstrip('/')}/api/status", timeout=5.0)
    except httpx.HTTPError as e:
        logger.warning("MindsDB health check failed: %s", e)
        return {"healthy": False, "error": str(e)}

    return {
        "healthy": response.status_code == 200,
        "status_code": response.status_code,
        "response_time_ms": round((time.monotonic() - started) * 1000),
    }


def format_agent_response(event: dict, status_code: int, result: dict) -> dict:
    """Wrap a result in the Bedrock Agent action-group response shape."""
    return {
        "messageVersion": "1.0",
        "response": {
            "actionGroup": event.get("actionGroup"),
            "apiPath": event.get("apiPath"),
            "httpMethod": event.get("httpMethod", "POST"),
            "httpStatusCode": status_code,
            "responseBody": {
                "application/json": {"body": json.dumps(result)},
            },
        },
        "sessionAttributes": event.get("sessionAttributes") or {},
        "promptSessionAttributes": event.get("promptSessionAttributes") or {},
    }
