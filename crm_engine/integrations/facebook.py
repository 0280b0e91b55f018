"""
Facebook Lead Ads Webhook

Handles the subscription handshake and turns leadgen notifications into CRM
leads by fetching each lead's form answers from the Graph API.
"""

import logging
import re
from datetime import datetime
from typing import Any, Mapping

import requests
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import Lead, utcnow
from ..repository import NEW_LEAD_STATUS, LeadRepository, load_integration_settings

logger = logging.getLogger(__name__)

INTEGRATION_SLUG = "facebook_ads_manager"

DEFAULT_SETTINGS = {
    "defaultOrigem": "tráfego pago",
    "defaultTipoContratacao": "Pessoa Física",
    "defaultResponsavel": "Luiza",
}


class IntegrationConfigError(Exception):
    """The integration is missing settings it needs to run."""


def normalize_phone(value) -> str:
    if not value or not isinstance(value, str):
        return ""
    return re.sub(r"\D", "", value)


def get_field_value(field_data: list | None, keys: list[str]) -> str | None:
    """First string value of the first form field whose name matches one of keys."""
    if not field_data:
        return None

    wanted = [key.strip().lower() for key in keys]
    for entry in field_data:
        name = entry.get("name") if isinstance(entry, Mapping) else None
        if not name or name.strip().lower() not in wanted:
            continue
        values = entry.get("values") if isinstance(entry.get("values"), list) else []
        first = next((v for v in values if isinstance(v, str)), None)
        if first is not None:
            return first.strip()
    return None


def _parse_created_time(value) -> datetime:
    if isinstance(value, str) and value:
        # Graph API uses +0000 offsets
        for fmt in ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z"):
            try:
                return datetime.strptime(value, fmt)
            except ValueError:
                continue
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"facebook-leads-webhook: unparseable created_time {value!r}")
    return utcnow()


def build_lead_record(payload: Mapping[str, Any], settings: Mapping[str, Any]) -> dict | None:
    """Map a Graph API lead to lead column values. Returns None for leads without a phone."""
    field_data = payload.get("field_data")

    nome = get_field_value(field_data, ["full_name", "nome", "nome_completo"]) or " ".join(
        part for part in (
            get_field_value(field_data, ["first_name"]),
            get_field_value(field_data, ["last_name"]),
        ) if part
    ).strip()

    telefone = normalize_phone(
        get_field_value(field_data, ["phone_number", "telefone", "celular"])
        or get_field_value(field_data, ["phone"])
    )
    if not telefone:
        logger.warning(f"facebook-leads-webhook: lead {payload.get('id')} skipped: no phone")
        return None

    created_at = _parse_created_time(payload.get("created_time"))

    notes = [f"Lead do Facebook Form {payload.get('form_id') or 'desconhecido'}"]
    if payload.get("campaign_id"):
        notes.append(f"Campanha: {payload['campaign_id']}")
    if payload.get("adset_id"):
        notes.append(f"Conjunto: {payload['adset_id']}")
    elif payload.get("adgroup_id"):
        notes.append(f"Conjunto: {payload['adgroup_id']}")
    if payload.get("ad_id"):
        notes.append(f"Anúncio: {payload['ad_id']}")

    def setting(key: str) -> str:
        value = settings.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return DEFAULT_SETTINGS[key]

    return {
        "nome_completo": nome or "Lead do Facebook",
        "telefone": telefone,
        "email": get_field_value(field_data, ["email"]) or None,
        "cidade": get_field_value(field_data, ["city", "cidade"]) or None,
        "regiao": get_field_value(field_data, ["state", "estado", "regiao"]) or None,
        "origem": setting("defaultOrigem"),
        "tipo_contratacao": setting("defaultTipoContratacao"),
        "operadora_atual": get_field_value(field_data, ["operadora", "plano_atual"]) or None,
        "status": NEW_LEAD_STATUS,
        "responsavel": setting("defaultResponsavel"),
        "proximo_retorno": None,
        "observacoes": " | ".join(notes),
        "data_criacao": created_at,
        "ultimo_contato": created_at,
        "arquivado": False,
    }


class FacebookLeadsWebhook:
    """Verification handshake and lead ingestion for the lead ads webhook."""

    def __init__(self, session: Session, graph_api_url: str = "https://graph.facebook.com/v20.0",
                 timeout: float = 15.0, http=None):
        self.session = session
        self.graph_api_url = graph_api_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests

    def settings(self) -> dict:
        return load_integration_settings(self.session, INTEGRATION_SLUG) or dict(DEFAULT_SETTINGS)

    def verify(self, params: Mapping[str, str]) -> tuple[int, str | dict]:
        """Answer the hub.challenge handshake. Returns (status_code, body)."""
        mode = params.get("hub.mode")
        token = params.get("hub.verify_token")
        challenge = params.get("hub.challenge")

        logger.info(f"facebook-leads-webhook: GET verification mode={mode} has_token={bool(token)}")

        if mode == "subscribe" and token and token == self.settings().get("verifyToken"):
            return 200, challenge or ""
        return 403, {"error": "Invalid verification token."}

    def handle(self, payload: Mapping[str, Any]) -> dict:
        """Ingest every lead referenced by the notification."""
        settings = self.settings()
        page_token = settings.get("pageAccessToken")
        if not page_token:
            raise IntegrationConfigError(
                "Configure the Facebook page access token before enabling the webhook."
            )

        entries = payload.get("entry") if isinstance(payload.get("entry"), list) else []
        logger.info(f"facebook-leads-webhook: POST with {len(entries)} entr{'y' if len(entries) == 1 else 'ies'}")

        results = []
        for entry in entries:
            changes = entry.get("changes") if isinstance(entry, Mapping) else None
            for change in changes if isinstance(changes, list) else []:
                value = change.get("value") if isinstance(change, Mapping) else None
                value = value if isinstance(value, Mapping) else {}
                lead_id = value.get("leadgen_id") or value.get("lead_id")
                if not lead_id:
                    continue
                results.append(self._process_lead(str(lead_id), page_token, settings))

        return {"received": len(entries), "results": results}

    def _process_lead(self, lead_id: str, page_token: str, settings: dict) -> dict:
        details = self.fetch_lead_details(lead_id, page_token)
        if details is None:
            return {"leadId": lead_id, "status": "error", "message": "Could not fetch lead details."}

        record = build_lead_record(details, settings)
        if record is None:
            return {"leadId": lead_id, "status": "skipped", "message": "Lead without a valid phone."}

        try:
            self.store_lead(record)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"facebook-leads-webhook: failed to store lead {lead_id}: {str(e)}", exc_info=True)
            return {"leadId": lead_id, "status": "error", "message": str(e)}

        logger.info(f"facebook-leads-webhook: lead {lead_id} stored")
        return {"leadId": lead_id, "status": "success"}

    def fetch_lead_details(self, lead_id: str, page_token: str) -> dict | None:
        url = f"{self.graph_api_url}/{lead_id}"
        try:
            response = self.http.get(
                url,
                params={"access_token": page_token},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"facebook-leads-webhook: error fetching lead {lead_id}: {e}")
            return None

        if response.status_code != 200:
            logger.error(f"facebook-leads-webhook: error fetching lead {lead_id}: {response.status_code} {response.text}")
            return None

        try:
            return response.json()
        except ValueError:
            logger.error(f"facebook-leads-webhook: lead {lead_id} returned invalid JSON")
            return None

    def store_lead(self, record: dict) -> Lead:
        """Insert the lead, flagged as duplicate when the phone or e-mail is already known."""
        lead = LeadRepository(self.session).create(record)
        self.session.commit()
        return lead
