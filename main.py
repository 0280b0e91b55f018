from flask import Flask, request, jsonify, make_response
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import scoped_session, sessionmaker
from werkzeug.exceptions import HTTPException
import json
import logging
import os

from crm_engine import ContractProcessor, ContractInput
from crm_engine.config import Settings
from crm_engine.db import configure_session
from crm_engine.integrations import (
    AutoContactService,
    FacebookLeadsWebhook,
    IntegrationConfigError,
    LeadIntakeService,
    LeadValidationError,
    WhatsAppWebhookProcessor,
)
from crm_engine.integrations.auto_contact import AutoContactError
from crm_engine.models import Contract, ValueAdjustment
from crm_engine.processor import result_to_dict
from crm_engine.repository import (
    AdjustmentNotFound,
    AdjustmentRepository,
    ContractNotFound,
    ContractRepository,
    LeadNotFound,
    LeadRepository,
)

settings = Settings.from_env()

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for all routes (back-office front end and webhook providers)
CORS(app)

# One session per request, bound on startup
Session = scoped_session(sessionmaker())
configure_session(Session, settings.database_url)

processor = ContractProcessor()


def configure_database(database_url: str, create_schema: bool = False):
    """Rebind the session registry, e.g. to an in-memory database in tests."""
    return configure_session(Session, database_url, create_schema=create_schema)


@app.teardown_appcontext
def shutdown_session(exception=None):
    Session.remove()


def _error(message: str, status: str, code: int):
    return jsonify({"error": message, "status": status}), code


def _json_body():
    """Parsed JSON object of the request, or None when absent or malformed."""
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else None


@app.errorhandler(ValueError)
def handle_validation_error(e):
    logger.error(f"Validation error: {str(e)}")
    return _error(str(e), "validation_failed", 400)


@app.errorhandler(LeadValidationError)
def handle_lead_validation_error(e):
    logger.error(f"Lead validation error: {str(e)}")
    return jsonify({"error": "Invalid lead data", "status": "validation_failed", "details": e.errors}), 400


@app.errorhandler(ContractNotFound)
@app.errorhandler(AdjustmentNotFound)
@app.errorhandler(LeadNotFound)
def handle_not_found(e):
    logger.warning(f"Not found: {str(e)}")
    return _error(str(e), "not_found", 404)


@app.errorhandler(SQLAlchemyError)
def handle_database_error(e):
    Session.rollback()
    logger.error(f"Database error: {str(e)}", exc_info=True)
    return _error("A database error occurred", "failed", 500)


@app.route("/api", methods=["GET"])
def api_info():
    """API information endpoint"""
    return jsonify({
        "status": "ok",
        "message": "Brokerage CRM Engine API",
        "version": "1.0",
        "environment": settings.environment,
        "endpoints": {
            "preview": "/contracts/preview [POST]",
            "contracts": "/contracts [POST], /contracts/<id> [GET, PUT]",
            "adjustments": "/contracts/<id>/adjustments [POST], /contracts/<id>/adjustments/<adjustment_id>?confirm=true [DELETE]",
            "leads": "/leads [GET, POST], /leads/<id> [PUT], /leads/batch [POST]",
            "auto_contact": "/leads/<id>/auto-contact [POST]",
            "whatsapp_webhook": "/webhooks/whatsapp [POST]",
            "facebook_webhook": "/webhooks/facebook [GET, POST]",
            "health": "/health [GET]"
        }
    }), 200


@app.route("/health", methods=["GET"])
def health():
    """Health check for monitoring"""
    return jsonify({"status": "healthy", "environment": settings.environment}), 200


# =============================================================================
# CONTRACTS
# =============================================================================


@app.route("/contracts/preview", methods=["POST"])
def preview_contract():
    """
    Recompute the derived fields for unsaved input. No validation and no
    persistence; this is what the form calls on every change.
    """
    input_data = _json_body()
    if not input_data or "contract" not in input_data:
        return _error("No input data provided", "failed", 400)

    result = processor.process_from_dict(input_data)
    return jsonify(result), 200


@app.route("/contracts", methods=["POST"])
def create_contract():
    """Validate, compute and persist a new contract with its initial adjustments."""
    input_data = _json_body()
    if not input_data or "contract" not in input_data:
        return _error("No input data provided", "failed", 400)

    contract_input = ContractInput.from_dict(input_data)
    codigo = contract_input.contract.codigo_contrato or "Unknown"
    logger.info(f"Creating contract: {codigo}")

    result = processor.prepare_for_save(contract_input)

    session = Session()
    contracts = ContractRepository(session)
    row = contracts.save(result.updated_contract_fields)
    adjustments = AdjustmentRepository(session)
    for adjustment in contract_input.adjustments:
        adjustments.add(row.id, adjustment)
    session.commit()

    logger.info(f"Contract created: {row.id} ({codigo})")
    return jsonify({"id": row.id, "result": result_to_dict(result)}), 201


@app.route("/contracts/<contract_id>", methods=["GET"])
def get_contract(contract_id):
    """Stored contract plus a fresh recomputation of its derived fields."""
    session = Session()
    contracts = ContractRepository(session)
    row = contracts.get(contract_id)
    result = processor.recompute(contracts.load_input(contract_id))
    adjustments = [AdjustmentRepository.to_dict(a) for a in row.adjustments]
    return jsonify({
        "contract": contracts.to_dict(row),
        "adjustments": adjustments,
        "result": result_to_dict(result)
    }), 200


@app.route("/contracts/<contract_id>", methods=["PUT"])
def update_contract(contract_id):
    """
    Validate, compute and persist changes to a contract.

    Omitted fields keep their stored values; the adjustment ledger is always
    the stored one.
    """
    input_data = _json_body()
    if not input_data or "contract" not in input_data:
        return _error("No input data provided", "failed", 400)

    session = Session()
    contracts = ContractRepository(session)
    stored = contracts.load_input(contract_id)
    fields = {**contracts.to_dict(contracts.get(contract_id)), **input_data["contract"]}

    contract_input = ContractInput(contract=Contract.from_dict(fields), adjustments=stored.adjustments)
    result = processor.prepare_for_save(contract_input)

    contracts.save(result.updated_contract_fields, contract_id=contract_id)
    session.commit()

    logger.info(f"Contract updated: {contract_id}")
    return jsonify({"id": contract_id, "result": result_to_dict(result)}), 200


@app.route("/contracts/<contract_id>/adjustments", methods=["POST"])
def add_adjustment(contract_id):
    """Record a surcharge or discount and recompute the stored commission."""
    data = _json_body()
    if not data:
        return _error("No input data provided", "failed", 400)

    adjustment = ValueAdjustment.from_dict(data)
    processor.validator.validate_adjustment(adjustment)

    session = Session()
    row = AdjustmentRepository(session).add(contract_id, adjustment)
    result = ContractRepository(session).recompute_and_store(contract_id, processor)
    session.commit()

    return jsonify({"adjustment": AdjustmentRepository.to_dict(row), "result": result_to_dict(result)}), 201


@app.route("/contracts/<contract_id>/adjustments/<int:adjustment_id>", methods=["DELETE"])
def delete_adjustment(contract_id, adjustment_id):
    """Remove an adjustment. Requires ?confirm=true; nothing is removed otherwise."""
    confirmed = request.args.get("confirm", "").strip().lower() in ("true", "1", "yes")

    session = Session()
    deleted = AdjustmentRepository(session).delete(contract_id, adjustment_id, confirmed=confirmed)
    if not deleted:
        return _error(
            "Deleting an adjustment is irreversible; repeat the request with confirm=true",
            "confirmation_required",
            409,
        )

    result = ContractRepository(session).recompute_and_store(contract_id, processor)
    session.commit()

    return jsonify({"deleted": adjustment_id, "result": result_to_dict(result)}), 200


# =============================================================================
# LEADS
# =============================================================================


def _lead_intake() -> LeadIntakeService:
    return LeadIntakeService(Session(), timeout=settings.http_timeout)


@app.route("/leads", methods=["POST"])
def create_lead():
    """Validate and store a lead, then send the first auto-contact message."""
    data = _json_body()
    if data is None:
        return _error("No input data provided", "failed", 400)

    lead = _lead_intake().create(data)
    return jsonify({"success": True, "message": "Lead created", "data": LeadRepository.to_dict(lead)}), 201


@app.route("/leads", methods=["GET"])
def list_leads():
    """Active leads, newest first, filtered by the query string."""
    leads = [LeadRepository.to_dict(lead) for lead in _lead_intake().search(request.args)]
    return jsonify({"success": True, "count": len(leads), "data": leads}), 200


@app.route("/leads/<lead_id>", methods=["PUT"])
def update_lead(lead_id):
    data = _json_body()
    if data is None:
        return _error("No input data provided", "failed", 400)

    lead = _lead_intake().update(lead_id, data)
    return jsonify({"success": True, "message": "Lead updated", "data": LeadRepository.to_dict(lead)}), 200


@app.route("/leads/batch", methods=["POST"])
def create_leads_batch():
    """Store a list of leads; failures are reported per index."""
    data = _json_body()
    if data is None:
        return _error("No input data provided", "failed", 400)

    items = data.get("leads")
    results = _lead_intake().create_batch(items)
    return jsonify({
        "success": True,
        "message": f"Processed {len(items)} leads: {len(results['success'])} stored, {len(results['failed'])} failed",
        "results": results
    }), 200


@app.route("/leads/<lead_id>/auto-contact", methods=["POST"])
def auto_contact_lead(lead_id):
    """Run the configured auto-contact message flow for a lead."""
    try:
        outcome = AutoContactService(Session(), timeout=settings.http_timeout).send_to_lead(lead_id)
    except AutoContactError as e:
        logger.error(f"Auto-contact failed for lead {lead_id}: {str(e)}")
        return _error(str(e), "failed", 502)
    return jsonify(outcome), 200


# =============================================================================
# WEBHOOKS
# =============================================================================


@app.route("/webhooks/whatsapp", methods=["POST"])
def whatsapp_webhook():
    """Ingest a WhatsApp provider event. Always acknowledges with 200."""
    raw_body = request.get_data(as_text=True)
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except json.JSONDecodeError:
        payload = {"raw": raw_body}
    if not isinstance(payload, dict):
        payload = {"raw": payload}

    result = WhatsAppWebhookProcessor(Session()).handle(
        payload,
        headers=dict(request.headers),
        query=request.args.to_dict(),
    )
    return jsonify(result), 200


def _facebook_webhook() -> FacebookLeadsWebhook:
    return FacebookLeadsWebhook(Session(), graph_api_url=settings.graph_api_url, timeout=settings.http_timeout)


@app.route("/webhooks/facebook", methods=["GET"])
def facebook_verify():
    """Subscription handshake: echo hub.challenge when the verify token matches."""
    status_code, body = _facebook_webhook().verify(request.args)
    if isinstance(body, dict):
        return jsonify(body), status_code
    response = make_response(body, status_code)
    response.mimetype = "text/plain"
    return response


@app.route("/webhooks/facebook", methods=["POST"])
def facebook_leads():
    payload = _json_body()
    if payload is None:
        return _error("Invalid JSON payload", "failed", 400)

    try:
        result = _facebook_webhook().handle(payload)
    except IntegrationConfigError as e:
        logger.error(f"facebook-leads-webhook: {str(e)}")
        return _error(str(e), "failed", 500)
    return jsonify(result), 200


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    # Let Flask render its own HTTP errors (404, 405, ...)
    if isinstance(e, HTTPException):
        return e
    logger.error(f"Unexpected processing error: {str(e)}", exc_info=True)
    return _error("An unexpected error occurred during processing", "failed", 500)


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=False)
