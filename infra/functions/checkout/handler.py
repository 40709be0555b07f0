"""
Lambda handler for checkout processing.

Transactions live in the session table next to chat sessions:
partition key ``merchant_id``, sort key ``checkout#<transaction_id>``,
expiring through the table's ``ttl`` attribute.

Routes (API Gateway proxy integration):
- POST /v1/checkout                         -> process
- POST /v1/checkout/cancel                  -> cancel
- GET  /v1/checkout/{transactionId}/status  -> status

Bedrock Agent action-group events for ``/process-checkout`` are handled as ``process``.
"""

import base64
import json
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))

# Configuration from environment
ENVIRONMENT = os.environ.get("ENVIRONMENT", "dev")
SESSION_TABLE_NAME = os.environ.get("SESSION_TABLE_NAME", "")
TRANSACTION_TTL_DAYS = int(os.environ.get("TRANSACTION_TTL_DAYS", "90"))

TRANSACTION_PREFIX = "checkout#"
DEFAULT_CANCEL_REASON = "User requested cancellation"

AGENT_API_PATHS = {
    "/process-checkout": "process",
    "/cancel-checkout": "cancel",
    "/checkout-status": "status",
}

RESPONSE_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
}


class CheckoutValidationError(ValueError):
    """Raised when a checkout request is invalid."""


class TransactionNotFoundError(LookupError):
    """Raised when a transaction does not exist for the merchant."""


def handler(event: dict, context) -> dict:
    """Lambda entry point for checkout actions."""
    is_agent_event = "actionGroup" in event or "apiPath" in event

    try:
        action, payload = parse_request(event)
        if action == "process":
            status_code, result = 200, process_checkout(payload)
        elif action == "cancel":
            status_code, result = 200, cancel_checkout(payload)
        elif action == "status":
            status_code, result = 200, get_checkout_status(payload)
        else:
            raise CheckoutValidationError(f"Unknown checkout action: {action}")
    except CheckoutValidationError as e:
        logger.warning("Invalid checkout request: %s", e)
        status_code, result = 400, {"success": False, "error": str(e)}
    except TransactionNotFoundError as e:
        status_code, result = 404, {"success": False, "error": str(e)}
    except ClientError as e:
        logger.error("DynamoDB request failed: %s", e)
        status_code, result = 502, {"success": False, "error": "Transaction store unavailable"}
    except Exception as e:
        logger.exception("Checkout processing failed: %s", e)
        status_code, result = 500, {"success": False, "error": "Checkout processing failed"}

    body = json.dumps(result, default=_json_default)
    if is_agent_event:
        return {
            "messageVersion": "1.0",
            "response": {
                "actionGroup": event.get("actionGroup"),
                "apiPath": event.get("apiPath"),
                "httpMethod": event.get("httpMethod", "POST"),
                "httpStatusCode": status_code,
                "responseBody": {"application/json": {"body": body}},
            },
            "sessionAttributes": event.get("sessionAttributes") or {},
        }
    return {"statusCode": status_code, "headers": RESPONSE_HEADERS, "body": body}


def health_handler(event: dict, context) -> dict:
    body = {
        "status": "healthy",
        "service": "checkout",
        "environment": ENVIRONMENT,
        "session_table_configured": bool(SESSION_TABLE_NAME),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return {"statusCode": 200, "headers": RESPONSE_HEADERS, "body": json.dumps(body)}


def parse_request(event: dict) -> tuple[str, dict]:
    """Resolve the checkout action and its payload from an API or agent event."""
    if "apiPath" in event:
        properties = (
            (event.get("requestBody") or {})
            .get("content", {})
            .get("application/json", {})
            .get("properties", [])
        )
        payload = {prop["name"]: _decode_agent_value(prop.get("value")) for prop in properties}
        # Session attributes are set by the calling application, parameters by the model
        session_attributes = event.get("sessionAttributes") or {}
        for key in ("merchant_id", "user_id"):
            if session_attributes.get(key):
                payload[key] = session_attributes[key]
        payload.setdefault("session_id", event.get("sessionId"))
        return AGENT_API_PATHS.get(event["apiPath"], event["apiPath"]), payload

    try:
        payload = json.loads(_request_body(event) or "{}")
    except json.JSONDecodeError as e:
        raise CheckoutValidationError("Request body must be valid JSON") from e
    if not isinstance(payload, dict):
        raise CheckoutValidationError("Request body must be a JSON object")

    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    claims = authorizer.get("claims") or {}
    if claims:
        # Authenticated callers only ever act for the merchant on their token
        payload["merchant_id"] = claims.get("custom:merchant_id")
        payload["user_id"] = claims.get("sub")
    else:
        headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}
        payload["merchant_id"] = payload.get("merchant_id") or headers.get("x-merchant-id")

    path_parameters = event.get("pathParameters") or {}
    if path_parameters.get("transactionId"):
        payload["transaction_id"] = path_parameters["transactionId"]

    resource = event.get("resource", "")
    if resource.endswith("/status"):
        return "status", payload
    if resource.endswith("/cancel"):
        return "cancel", payload
    return payload.get("action", "process"), payload


def validate_items(items) -> list[dict]:
    """Validate line items and normalize prices to Decimal."""
    if not isinstance(items, list) or not items:
        raise CheckoutValidationError("At least one item is required")

    validated = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise CheckoutValidationError(f"Item {index} must be an object")

        sku = item.get("sku") or item.get("product_id")
        if not sku:
            raise CheckoutValidationError(f"Item {index} is missing a sku")

        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise CheckoutValidationError(f"Item {index} quantity must be a positive integer")

        try:
            price = Decimal(str(item.get("price")))
        except InvalidOperation as e:
            raise CheckoutValidationError(f"Item {index} price must be a number") from e
        if not price.is_finite() or price < 0:
            raise CheckoutValidationError(f"Item {index} price must be non-negative")

        validated.append(
            {
                "sku": str(sku),
                "name": item.get("name") or str(sku),
                "quantity": quantity,
                "price": price,
            }
        )
    return validated


def calculate_total(items: list[dict]) -> Decimal:
    return sum((item["price"] * item["quantity"] for item in items), Decimal("0"))


def process_checkout(payload: dict) -> dict:
    merchant_id = _require(payload, "merchant_id")
    items = validate_items(payload.get("items"))
    total = calculate_total(items)

    now = datetime.now(timezone.utc)
    transaction_id = str(uuid.uuid4())
    transaction = {
        "merchant_id": merchant_id,
        "session_id": f"{TRANSACTION_PREFIX}{transaction_id}",
        "transaction_id": transaction_id,
        "checkout_session_id": payload.get("session_id") or "",
        "user_id": payload.get("user_id") or "anonymous",
        "items": items,
        "total_amount": total,
        "currency": payload.get("currency", "USD"),
        "payment_method": payload.get("payment_method", "default"),
        "status": "confirmed",
        "created_at": now.isoformat(),
        "updated_at": now.isoformat(),
        "ttl": int(time.time()) + TRANSACTION_TTL_DAYS * 86400,
    }

    _get_table().put_item(Item=transaction)
    logger.info(
        "Created transaction %s for merchant %s (total %s)", transaction_id, merchant_id, total
    )

    return {
        "success": True,
        "transaction_id": transaction_id,
        "status": transaction["status"],
        "total_amount": total,
        "currency": transaction["currency"],
        "created_at": transaction["created_at"],
    }


def cancel_checkout(payload: dict) -> dict:
    merchant_id = _require(payload, "merchant_id")
    transaction_id = _require(payload, "transaction_id")
    reason = payload.get("reason") or DEFAULT_CANCEL_REASON

    transaction = _load_transaction(merchant_id, transaction_id)
    if transaction.get("status") == "cancelled":
        raise CheckoutValidationError(f"Transaction {transaction_id} is already cancelled")

    updated_at = datetime.now(timezone.utc).isoformat()
    _get_table().update_item(
        Key={"merchant_id": merchant_id, "session_id": f"{TRANSACTION_PREFIX}{transaction_id}"},
        UpdateExpression="SET #status = :status, cancellation_reason = :reason, updated_at = :now",
        ExpressionAttributeNames={"#status": "status"},
        ExpressionAttributeValues={
            ":status": "cancelled",
            ":reason": reason,
            ":now": updated_at,
        },
    )
    logger.info("Cancelled transaction %s for merchant %s", transaction_id, merchant_id)

    return {
        "success": True,
        "transaction_id": transaction_id,
        "status": "cancelled",
        "reason": reason,
        "updated_at": updated_at,
    }


def get_checkout_status(payload: dict) -> dict:
    merchant_id = _require(payload, "merchant_id")
    transaction_id = _require(payload, "transaction_id")
    transaction = _load_transaction(merchant_id, transaction_id)

    return {
        "success": True,
        "transaction_id": transaction_id,
        "status": transaction.get("status"),
        "total_amount": transaction.get("total_amount"),
        "currency": transaction.get("currency"),
        "updated_at": transaction.get("updated_at"),
    }


def _load_transaction(merchant_id: str, transaction_id: str) -> dict:
    response = _get_table().get_item(
        Key={"merchant_id": merchant_id, "session_id": f"{TRANSACTION_PREFIX}{transaction_id}"}
    )
    item = response.get("Item")
    if not item:
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
    return item


def _get_table():
    if not SESSION_TABLE_NAME:
        raise RuntimeError("SESSION_TABLE_NAME not configured")
    return boto3.resource("dynamodb").Table(SESSION_TABLE_NAME)


def _request_body(event: dict) -> str | None:
    """Proxy request body as text; binary media types arrive base64 encoded."""
    body = event.get("body")
    if body and event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body).decode("utf-8")
        except ValueError as e:
            raise CheckoutValidationError("Request body must be valid JSON") from e
    return body


def _require(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not value:
        raise CheckoutValidationError(f"{key} is required")
    return str(value)


def _decode_agent_value(value):
    # Agent parameters arrive as strings; arrays and objects are JSON encoded
    if isinstance(value, str) and value[:1] in ("[", "{"):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _json_default(value):
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
