"""
AWS Lambda handler for the Brokerage CRM Engine API.

This is the production entry point for the webhook functions and the
contract preview. For local development, use main.py (Flask app) instead.
"""

import base64
import json
import logging
from urllib.parse import parse_qsl

from crm_engine import ContractProcessor
from crm_engine.config import Settings
from crm_engine.db import build_session_factory, session_scope
from crm_engine.integrations import FacebookLeadsWebhook, IntegrationConfigError, WhatsAppWebhookProcessor

settings = Settings.from_env()

# Configure logging
logger = logging.getLogger()
logger.setLevel(settings.log_level)

# Environment (dev, staging, prod)
ENVIRONMENT = settings.environment

# Initialize processor and session factory (reused across warm invocations)
processor = ContractProcessor()
SessionFactory = build_session_factory(settings.database_url)

# CORS headers for API Gateway
CORS_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type,Authorization,X-Whapi-Event",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
}


def configure_database(database_url: str, create_schema: bool = False):
    """Point the handler at another database, e.g. in-memory SQLite in tests."""
    global SessionFactory
    SessionFactory = build_session_factory(database_url, create_schema=create_schema)
    return SessionFactory


def _response(status_code: int, body, content_type: str | None = None) -> dict:
    headers = dict(CORS_HEADERS)
    if content_type:
        headers["Content-Type"] = content_type
    return {
        "statusCode": status_code,
        "headers": headers,
        "body": body if isinstance(body, str) else json.dumps(body),
    }


def lambda_handler(event, context):
    """
    Main Lambda entry point.

    Handles API Gateway events for:
    - GET /health
    - GET /api
    - POST /contracts/preview
    - POST /webhooks/whatsapp
    - GET|POST /webhooks/facebook
    - OPTIONS (CORS preflight)
    """
    # Handle CORS preflight
    http_method = event.get("httpMethod") or event.get("requestContext", {}).get("http", {}).get("method", "")
    if http_method == "OPTIONS":
        return {"statusCode": 200, "headers": CORS_HEADERS, "body": ""}

    # Get path (supports both REST API and HTTP API formats)
    path = event.get("path") or event.get("rawPath", "")

    # Route to appropriate handler
    if path == "/health" and http_method == "GET":
        return handle_health()
    elif path == "/api" and http_method == "GET":
        return handle_api_info()
    elif path == "/contracts/preview" and http_method == "POST":
        return handle_preview(event)
    elif path == "/webhooks/whatsapp" and http_method == "POST":
        return handle_whatsapp_webhook(event)
    elif path == "/webhooks/facebook" and http_method == "GET":
        return handle_facebook_verify(event)
    elif path == "/webhooks/facebook" and http_method == "POST":
        return handle_facebook_leads(event)
    else:
        return _response(404, {"error": "Not found", "path": path})


def handle_health():
    """Health check endpoint."""
    return _response(200, {"status": "healthy", "environment": ENVIRONMENT})


def handle_api_info():
    """API information endpoint."""
    return _response(
        200,
        {
            "status": "ok",
            "message": "Brokerage CRM Engine API",
            "version": "1.0",
            "environment": ENVIRONMENT,
            "runtime": "AWS Lambda",
            "endpoints": {
                "preview": "/contracts/preview [POST]",
                "whatsapp_webhook": "/webhooks/whatsapp [POST]",
                "facebook_webhook": "/webhooks/facebook [GET, POST]",
                "health": "/health [GET]",
            },
        },
    )


def _raw_body(event) -> str:
    body = event.get("body") or ""
    if not isinstance(body, str):
        return json.dumps(body)
    # Handle base64 encoded body (API Gateway)
    if body and event.get("isBase64Encoded"):
        body = base64.b64decode(body).decode("utf-8")
    return body


def _query_params(event) -> dict:
    params = event.get("queryStringParameters")
    if params:
        return dict(params)
    raw_query = event.get("rawQueryString")
    return dict(parse_qsl(raw_query)) if raw_query else {}


def handle_preview(event):
    """Recompute a contract's derived fields without validating or saving."""
    try:
        body = event.get("body", "")
        if isinstance(body, str):
            if not body:
                return _response(400, {"error": "No input data provided", "status": "failed"})
            input_data = json.loads(_raw_body(event))
        else:
            input_data = body

        codigo = input_data.get("contract", {}).get("codigo_contrato") or "Unknown"
        logger.info(f"Previewing contract: {codigo}")

        result = processor.process_from_dict(input_data)

        return _response(200, result)

    except json.JSONDecodeError as e:
        logger.error(f"JSON parse error: {str(e)}")
        return _response(400, {"error": f"Invalid JSON: {str(e)}", "status": "failed"})

    except (ValueError, KeyError, TypeError, AttributeError) as e:
        # Missing contract object, invalid adjustment types, etc.
        logger.error(f"Validation error: {str(e)}")
        return _response(400, {"error": f"Validation error: {str(e)}", "status": "validation_failed"})

    except Exception as e:
        # Unexpected errors - log details but return generic message to avoid information disclosure
        logger.error(f"Unexpected processing error: {str(e)}", exc_info=True)
        return _response(500, {"error": "An unexpected error occurred during processing", "status": "failed"})


def handle_whatsapp_webhook(event):
    """Ingest a WhatsApp provider event. Non-JSON bodies are kept as {"raw": text}."""
    raw_body = _raw_body(event)
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except json.JSONDecodeError:
        payload = {"raw": raw_body}
    if not isinstance(payload, dict):
        payload = {"raw": payload}

    try:
        with session_scope(SessionFactory) as session:
            result = WhatsAppWebhookProcessor(session).handle(
                payload,
                headers=event.get("headers") or {},
                query=_query_params(event),
            )
    except Exception as e:
        logger.error(f"whatsapp-webhook: unexpected error: {str(e)}", exc_info=True)
        return _response(500, {"error": "An unexpected error occurred during processing", "status": "failed"})

    return _response(200, result)


def handle_facebook_verify(event):
    with session_scope(SessionFactory) as session:
        webhook = FacebookLeadsWebhook(session, graph_api_url=settings.graph_api_url, timeout=settings.http_timeout)
        status_code, body = webhook.verify(_query_params(event))

    if isinstance(body, str):
        return _response(status_code, body, content_type="text/plain")
    return _response(status_code, body)


def handle_facebook_leads(event):
    try:
        payload = json.loads(_raw_body(event) or "{}")
    except json.JSONDecodeError as e:
        logger.error(f"facebook-leads-webhook: invalid JSON: {str(e)}")
        return _response(400, {"error": f"Invalid JSON: {str(e)}", "status": "failed"})

    try:
        with session_scope(SessionFactory) as session:
            webhook = FacebookLeadsWebhook(session, graph_api_url=settings.graph_api_url, timeout=settings.http_timeout)
            result = webhook.handle(payload if isinstance(payload, dict) else {})
    except IntegrationConfigError as e:
        logger.error(f"facebook-leads-webhook: {str(e)}")
        return _response(500, {"error": str(e), "status": "failed"})
    except Exception as e:
        logger.error(f"facebook-leads-webhook: unexpected error: {str(e)}", exc_info=True)
        return _response(500, {"error": "An unexpected error occurred during processing", "status": "failed"})

    return _response(200, result)
