"""
Auto-Contact Message Flow

Sends a configured sequence of WhatsApp messages to a new lead, waiting each
step's delay before sending. An optional abort check is evaluated before and
after every wait; when it returns False the remaining steps are skipped.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import requests
from sqlalchemy.orm import Session

from ..db import Lead, utcnow
from ..repository import LeadNotFound, load_integration_settings

logger = logging.getLogger(__name__)

AUTO_CONTACT_INTEGRATION_SLUG = "whatsapp_auto_contact"

DEFAULT_STATUS = "Contato Inicial"
DEFAULT_BASE_URL = "http://localhost:3000"


class AutoContactError(Exception):
    """An auto-contact message could not be sent."""


@dataclass
class AutoContactStep:
    id: str
    message: str
    delay_seconds: float = 0
    active: bool = True


DEFAULT_MESSAGE_FLOW = [
    AutoContactStep(
        id="step-1",
        message=(
            "Oi {{primeiro_nome}}, tudo bem? Sou a Luiza Kifer, especialista em planos de saúde, "
            "e vi que você demonstrou interesse em receber uma cotação."
        ),
        delay_seconds=0,
    ),
    AutoContactStep(
        id="step-2",
        message=(
            "Será que você tem um minutinho pra conversarmos? "
            "Quero entender melhor o que você está buscando no plano de saúde 😊"
        ),
        delay_seconds=120,
    ),
]


def _number(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _delay_seconds(step: Mapping[str, Any]) -> float:
    """delaySeconds wins; legacy delayMinutes is converted. Never negative."""
    seconds = _number(step.get("delaySeconds"))
    if seconds is None:
        minutes = _number(step.get("delayMinutes"))
        seconds = minutes * 60 if minutes is not None else 0
    return max(0.0, seconds)


def _text(value, default: str = "") -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


@dataclass
class AutoContactSettings:
    enabled: bool = True
    base_url: str = DEFAULT_BASE_URL
    session_id: str = ""
    api_key: str = ""
    status_on_send: str = DEFAULT_STATUS
    message_flow: list[AutoContactStep] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "AutoContactSettings":
        """Normalize the stored integration JSON, filling defaults for anything unusable."""
        raw = raw if isinstance(raw, Mapping) else {}
        flow = raw.get("messageFlow")
        steps = []
        if isinstance(flow, list):
            for index, step in enumerate(flow):
                step = step if isinstance(step, Mapping) else {}
                steps.append(AutoContactStep(
                    id=_text(step.get("id"), f"step-{index}"),
                    message=step.get("message") if isinstance(step.get("message"), str) else "",
                    delay_seconds=_delay_seconds(step),
                    active=step.get("active") is not False,
                ))

        return cls(
            enabled=raw.get("enabled") is not False,
            base_url=_text(raw.get("baseUrl"), DEFAULT_BASE_URL),
            session_id=_text(raw.get("sessionId")),
            api_key=raw.get("apiKey") if isinstance(raw.get("apiKey"), str) else "",
            status_on_send=_text(raw.get("statusOnSend"), DEFAULT_STATUS),
            message_flow=steps,
        )


def apply_template_variables(template: str, lead: Lead) -> str:
    full_name = lead.nome_completo or ""
    first_name = full_name.strip().split()[0] if full_name.strip() else ""

    replacements = {
        "nome": full_name,
        "primeiro_nome": first_name,
        "origem": lead.origem or "",
        "cidade": lead.cidade or "",
        "responsavel": lead.responsavel or "",
    }
    for name, value in replacements.items():
        template = re.sub(r"{{\s*" + name + r"\s*}}", lambda _m, v=value: v, template, flags=re.IGNORECASE)
    return template


def build_endpoint(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + "/" + path.lstrip("/")


class AutoContactSender:
    """Posts text messages to the WhatsApp API session."""

    def __init__(self, settings: AutoContactSettings, timeout: float = 30.0, http=None):
        self.settings = settings
        self.timeout = timeout
        self.http = http or requests

    def send(self, lead: Lead, message: str) -> None:
        phone = re.sub(r"\D", "", lead.telefone or "")
        if not phone:
            raise AutoContactError("Invalid phone number for automatic contact.")
        if not self.settings.session_id:
            raise AutoContactError("Session ID is not configured for the auto-contact integration.")

        endpoint = build_endpoint(self.settings.base_url, f"/client/sendMessage/{self.settings.session_id}")
        payload = {"chatId": f"55{phone}@c.us", "contentType": "string", "content": message}

        logger.info(f"[AutoContact] Sending message to lead {lead.id} via {endpoint}")

        try:
            response = self.http.post(
                endpoint,
                json=payload,
                headers={"Content-Type": "application/json", "x-api-key": self.settings.api_key},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"[AutoContact] Connection error sending to {endpoint}: {e}")
            raise AutoContactError(str(e)) from e

        if response.status_code not in (200, 201):
            detail = f"{response.status_code} {response.reason}"
            if response.text and response.text.strip():
                detail = f"{detail}: {response.text.strip()}"
            logger.error(f"[AutoContact] Send failed for lead {lead.id}: {detail}")
            raise AutoContactError(f"Failed to send automatic message ({detail})")


def run_auto_contact_flow(
    lead: Lead,
    settings: AutoContactSettings,
    sender: AutoContactSender | None = None,
    should_continue: Callable[[], bool] | None = None,
    on_first_message_sent: Callable[[], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Run the configured flow for one lead. Returns the number of messages sent.

    Steps run sequentially, ordered by delay; each step waits its own delay
    before sending.
    """
    sender = sender or AutoContactSender(settings)
    steps = sorted(
        (s for s in settings.message_flow if s.active and s.message.strip()),
        key=lambda s: s.delay_seconds,
    )

    sent = 0
    for step in steps:
        if should_continue is not None and should_continue() is False:
            break
        if step.delay_seconds > 0:
            sleep(step.delay_seconds)
        if should_continue is not None and should_continue() is False:
            break

        sender.send(lead, apply_template_variables(step.message, lead))
        sent += 1

        if sent == 1 and on_first_message_sent is not None:
            on_first_message_sent()

    if sent < len(steps):
        logger.info(f"[AutoContact] Flow for lead {lead.id} stopped after {sent} of {len(steps)} step(s)")
    return sent


def load_auto_contact_settings(session: Session) -> AutoContactSettings:
    return AutoContactSettings.from_dict(load_integration_settings(session, AUTO_CONTACT_INTEGRATION_SLUG))


class AutoContactService:
    """Manual trigger of the auto-contact flow for a stored lead."""

    def __init__(self, session: Session, timeout: float = 30.0, http=None):
        self.session = session
        self.timeout = timeout
        self.http = http

    def send_to_lead(self, lead_id: str, should_continue: Callable[[], bool] | None = None,
                     sleep: Callable[[float], None] = time.sleep) -> dict:
        """
        Run the flow for one lead. After the first message is sent the lead's
        last contact is stamped and its status moved to statusOnSend.
        """
        lead = self.session.get(Lead, lead_id)
        if lead is None:
            raise LeadNotFound(f"Lead not found: {lead_id}")

        settings = load_auto_contact_settings(self.session)
        if not settings.session_id or not settings.base_url:
            raise AutoContactError("Auto-contact integration is not configured.")
        if not settings.message_flow:
            settings.message_flow = list(DEFAULT_MESSAGE_FLOW)

        def mark_contacted():
            self._mark_contacted(lead, settings.status_on_send)

        sender = AutoContactSender(settings, timeout=self.timeout, http=self.http)
        sent = run_auto_contact_flow(
            lead,
            settings,
            sender=sender,
            should_continue=should_continue,
            on_first_message_sent=mark_contacted,
            sleep=sleep,
        )
        return {"leadId": lead.id, "sent": sent, "status": lead.status}

    def send_first_message(self, lead: Lead) -> bool:
        """
        Send only the first active step, as done right after a lead is created.

        Best-effort: a disabled or incomplete integration, or a failed send, is
        logged and reported as False; the lead is left untouched.
        """
        raw = load_integration_settings(self.session, AUTO_CONTACT_INTEGRATION_SLUG)
        settings = AutoContactSettings.from_dict(raw)
        if raw is None or not settings.enabled:
            logger.info(f"[AutoContact] Integration disabled or not configured; lead {lead.id} not contacted")
            return False

        steps = sorted(
            (s for s in settings.message_flow if s.active and s.message.strip()),
            key=lambda s: s.delay_seconds,
        )
        if not steps:
            logger.info("[AutoContact] Message flow has no active steps")
            return False

        sender = AutoContactSender(settings, timeout=self.timeout, http=self.http)
        try:
            sender.send(lead, apply_template_variables(steps[0].message, lead))
        except AutoContactError as e:
            logger.error(f"[AutoContact] First message to lead {lead.id} failed: {str(e)}")
            return False

        self._mark_contacted(lead, settings.status_on_send)
        return True

    def _mark_contacted(self, lead: Lead, desired_status: str) -> None:
        lead.ultimo_contato = utcnow()
        if (lead.status or "").strip().lower() != desired_status.lower():
            logger.info(f"[AutoContact] Lead {lead.id} status {lead.status!r} -> {desired_status!r}")
            lead.status = desired_status
        self.session.commit()
