"""
Lead Intake API

Validates leads submitted by forms, landing pages and partner systems, stores
them (flagging known phones and e-mails as duplicates) and fires the first
auto-contact message for each new lead.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import Lead
from ..repository import NEW_LEAD_STATUS, LeadRepository
from .auto_contact import AutoContactService

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Dates without an offset are Brasília time
BRASILIA_TZ = timezone(timedelta(hours=-3))

DEFAULT_SEARCH_LIMIT = 100

REQUIRED_LABELS = ("origem", "tipo_contratacao", "responsavel")
OPTIONAL_TEXT_FIELDS = ("cidade", "regiao", "cep", "endereco", "estado", "operadora_atual", "observacoes")
SEARCH_FILTERS = ("status", "responsavel", "origem", "tipo_contratacao", "telefone", "email")


class LeadValidationError(ValueError):
    """Submitted lead data failed one or more rules; `errors` lists every failure."""

    def __init__(self, errors: list[str]):
        super().__init__("Invalid lead data: " + "; ".join(errors))
        self.errors = errors


def normalize_telefone(value: str) -> str:
    return re.sub(r"\D", "", value)


def optional_text(value) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_datetime_input(value) -> datetime | None:
    """
    Parse YYYY-MM-DD or ISO 8601 input into an aware UTC datetime.

    Dates get midnight; values without an offset are taken as Brasília time.
    Returns None for anything unparseable.
    """
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if "T" not in text:
        text = f"{text}T00:00:00"
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # +0300 -> +03:00
    text = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", text)

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=BRASILIA_TZ)
    return parsed.astimezone(timezone.utc)


def validate_lead_data(data: Mapping[str, Any]) -> dict:
    """Validate a new lead, collecting every error. Returns lead column values."""
    if not isinstance(data, Mapping):
        raise LeadValidationError(["Lead must be a JSON object"])

    errors = []

    if not isinstance(data.get("nome_completo"), str) or not data["nome_completo"].strip():
        errors.append('Field "nome_completo" is required and must be a string')

    if not isinstance(data.get("telefone"), str) or not normalize_telefone(data["telefone"]):
        errors.append('Field "telefone" is required and must be a string with digits')

    for name in REQUIRED_LABELS:
        if optional_text(data.get(name)) is None:
            errors.append(f'Field "{name}" is required')

    email = optional_text(data.get("email"))
    if email and not EMAIL_RE.match(email):
        errors.append('Field "email" must be a valid e-mail address')

    created_at = None
    if data.get("data_criacao") is not None:
        created_at = parse_datetime_input(data["data_criacao"])
        if created_at is None:
            errors.append('Field "data_criacao" must be a valid date (ISO 8601 or YYYY-MM-DD)')

    next_contact = parse_datetime_input(data.get("proximo_retorno"))
    if data.get("proximo_retorno") and next_contact is None:
        errors.append('Field "proximo_retorno" must be a valid date (ISO 8601 or YYYY-MM-DD)')

    if errors:
        raise LeadValidationError(errors)

    created_at = created_at or datetime.now(timezone.utc)
    record = {
        "nome_completo": data["nome_completo"].strip(),
        "telefone": normalize_telefone(data["telefone"]),
        "email": email,
        "status": optional_text(data.get("status")) or NEW_LEAD_STATUS,
        "proximo_retorno": next_contact,
        "data_criacao": created_at,
        "ultimo_contato": created_at,
        "arquivado": False,
    }
    for name in REQUIRED_LABELS:
        record[name] = data[name].strip()
    for name in OPTIONAL_TEXT_FIELDS:
        record[name] = optional_text(data.get(name))
    return record


def validate_lead_update(data: Mapping[str, Any]) -> dict:
    """Validate a partial update. Only fields present in `data` are returned."""
    if not isinstance(data, Mapping):
        raise LeadValidationError(["Lead must be a JSON object"])

    errors = []
    fields = {}

    if "nome_completo" in data:
        if not isinstance(data["nome_completo"], str):
            errors.append('Field "nome_completo" must be a string')
        else:
            fields["nome_completo"] = data["nome_completo"].strip()

    if "telefone" in data:
        if not isinstance(data["telefone"], str):
            errors.append('Field "telefone" must be a string')
        else:
            fields["telefone"] = normalize_telefone(data["telefone"])

    if "email" in data:
        email = optional_text(data["email"])
        if email and not EMAIL_RE.match(email):
            errors.append('Field "email" must be a valid e-mail address')
        fields["email"] = email

    for name in OPTIONAL_TEXT_FIELDS:
        if name in data:
            fields[name] = optional_text(data[name])

    for name in REQUIRED_LABELS + ("status",):
        if name in data:
            value = optional_text(data[name])
            if value is None:
                errors.append(f'Field "{name}" cannot be blank')
            else:
                fields[name] = value

    if "proximo_retorno" in data:
        parsed = parse_datetime_input(data["proximo_retorno"])
        if data["proximo_retorno"] and parsed is None:
            errors.append('Field "proximo_retorno" must be a valid date (ISO 8601 or YYYY-MM-DD)')
        else:
            fields["proximo_retorno"] = parsed

    if "data_criacao" in data:
        parsed = parse_datetime_input(data["data_criacao"])
        if parsed is None:
            errors.append('Field "data_criacao" must be a valid date (ISO 8601 or YYYY-MM-DD)')
        else:
            fields["data_criacao"] = parsed

    if errors:
        raise LeadValidationError(errors)
    return fields


def parse_search_params(params: Mapping[str, str]) -> tuple[dict, int]:
    """Query-string filters and limit for listing leads. A bad limit falls back to the default."""
    filters = {}
    for name in SEARCH_FILTERS:
        value = optional_text(params.get(name))
        if value is not None:
            filters[name] = normalize_telefone(value) if name == "telefone" else value

    try:
        limit = int(params.get("limit", DEFAULT_SEARCH_LIMIT))
    except (TypeError, ValueError):
        limit = DEFAULT_SEARCH_LIMIT
    return filters, max(1, limit)


class LeadIntakeService:
    """Create, update, list and batch-import leads."""

    def __init__(self, session: Session, timeout: float = 30.0, http=None):
        self.session = session
        self.leads = LeadRepository(session)
        self.auto_contact = AutoContactService(session, timeout=timeout, http=http)

    def create(self, data: Mapping[str, Any]) -> Lead:
        """Validate and store one lead, then send it the first auto-contact message."""
        record = validate_lead_data(data)
        lead = self.leads.create(record)
        self.session.commit()
        logger.info(f"leads-api: lead {lead.id} created with status {lead.status!r}")

        self.auto_contact.send_first_message(lead)
        return lead

    def create_batch(self, items) -> dict:
        """
        Store every valid lead of the batch. Invalid or failing entries are
        reported by index and never stop the rest. No auto-contact is sent.
        """
        if not isinstance(items, list):
            raise LeadValidationError(['Field "leads" must be an array'])

        results = {"success": [], "failed": []}
        for index, item in enumerate(items):
            try:
                record = validate_lead_data(item)
            except LeadValidationError as e:
                results["failed"].append({"index": index, "data": item, "errors": e.errors})
                continue

            try:
                lead = self.leads.create(record)
                self.session.commit()
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(f"leads-api: batch entry {index} failed: {str(e)}")
                results["failed"].append({"index": index, "data": item, "error": str(e)})
                continue

            results["success"].append({"index": index, "data": LeadRepository.to_dict(lead)})

        logger.info(
            f"leads-api: batch of {len(items)}: {len(results['success'])} stored, {len(results['failed'])} failed"
        )
        return results

    def update(self, lead_id: str, data: Mapping[str, Any]) -> Lead:
        fields = validate_lead_update(data)
        lead = self.leads.update(lead_id, fields)
        self.session.commit()
        logger.info(f"leads-api: lead {lead_id} updated ({', '.join(sorted(fields)) or 'no fields'})")
        return lead

    def search(self, params: Mapping[str, str]) -> list[Lead]:
        filters, limit = parse_search_params(params)
        return self.leads.search(filters, limit=limit)
