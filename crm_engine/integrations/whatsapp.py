"""
WhatsApp Webhook Ingestion

Normalizes WhatsApp Business provider (Whapi) webhook events into chat and
message rows.

Processing per event:
1. Resolve the event name (header, then query string, then body)
2. Store the raw event for auditing (failures are logged, never fatal)
3. For message events, normalize and upsert each message, merging chats
   that turn out to belong to an already known phone number
4. For status events, update the ack status of each referenced message

Individual message failures are logged and skipped; the batch continues.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import Lead, WhatsAppChat, WhatsAppMessage, WhatsAppWebhookEvent, utcnow
from ..repository import phone_digits, phone_variants

logger = logging.getLogger(__name__)

EVENT_HEADER = "X-Whapi-Event"

GROUP_SUFFIX = "@g.us"
LID_SUFFIX = "@lid"
PHONE_SUFFIXES = ("@s.whatsapp.net", "@c.us")

# First populated field wins
CONTENT_PRIORITY = ("text", "image", "video", "audio", "voice", "document", "location")


def only_digits(value) -> str:
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


# =============================================================================
# MESSAGE CONTENT (tagged union over the provider content types)
# =============================================================================


@dataclass(frozen=True)
class TextContent:
    text: str
    kind: str = "text"
    has_media: bool = False

    @property
    def body(self) -> str | None:
        return self.text or None


@dataclass(frozen=True)
class MediaContent:
    kind: str  # image | video | audio | voice | document
    caption: str | None = None
    filename: str | None = None
    mime_type: str | None = None
    link: str | None = None
    has_media: bool = True

    @property
    def body(self) -> str | None:
        if self.caption:
            return self.caption
        if self.kind == "document":
            return self.filename
        return None


@dataclass(frozen=True)
class LocationContent:
    latitude: float | None = None
    longitude: float | None = None
    name: str | None = None
    address: str | None = None
    kind: str = "location"
    has_media: bool = False

    @property
    def body(self) -> str | None:
        if self.address:
            return self.address
        if self.name:
            return self.name
        if self.latitude is not None and self.longitude is not None:
            return f"{self.latitude},{self.longitude}"
        return None


MessageContent = TextContent | MediaContent | LocationContent


def _populated(value) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, Mapping):
        return bool(value)
    return False


def extract_content(raw: Mapping[str, Any]) -> MessageContent | None:
    """Pick the first populated content field in CONTENT_PRIORITY order."""
    for kind in CONTENT_PRIORITY:
        value = raw.get(kind)
        if not _populated(value):
            continue

        if kind == "text":
            text = value if isinstance(value, str) else value.get("body") or ""
            return TextContent(text=text)

        if kind == "location":
            return LocationContent(
                latitude=value.get("latitude"),
                longitude=value.get("longitude"),
                name=value.get("name"),
                address=value.get("address"),
            )

        if isinstance(value, str):
            return MediaContent(kind=kind, link=value)
        return MediaContent(
            kind=kind,
            caption=value.get("caption"),
            filename=value.get("filename") or value.get("file_name"),
            mime_type=value.get("mime_type"),
            link=value.get("link"),
        )
    return None


# =============================================================================
# NORMALIZATION
# =============================================================================


@dataclass
class NormalizedMessage:
    message_id: str
    chat_id: str
    direction: str  # inbound | outbound
    is_group: bool
    phone_number: str | None
    lid: str | None
    content: MessageContent | None
    type: str | None
    timestamp: datetime | None
    from_number: str | None
    contact_name: str | None
    payload: dict = field(default_factory=dict)

    @property
    def body(self) -> str | None:
        return self.content.body if self.content else None

    @property
    def has_media(self) -> bool:
        return bool(self.content and self.content.has_media)


def to_datetime(timestamp) -> datetime | None:
    """Unix seconds (or milliseconds) to an aware UTC datetime."""
    if timestamp is None or isinstance(timestamp, bool):
        return None
    try:
        numeric = float(timestamp)
    except (TypeError, ValueError):
        return None
    if numeric > 1_000_000_000_000:
        numeric = numeric / 1000
    try:
        return datetime.fromtimestamp(numeric, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def resolve_chat_identity(chat_id: str, raw: Mapping[str, Any], outbound: bool) -> tuple[bool, str | None, str | None]:
    """Return (is_group, phone_number, lid) for a provider chat id."""
    lowered = chat_id.lower()
    local_part = chat_id.split("@", 1)[0]

    if lowered.endswith(GROUP_SUFFIX):
        return True, None, None

    if lowered.endswith(LID_SUFFIX):
        # Linked ids carry no phone; an inbound sender field may
        sender = str(raw.get("from") or "")
        phone = sender if not outbound and sender.isdigit() else None
        return False, phone, local_part

    if lowered.endswith(PHONE_SUFFIXES) or local_part.isdigit():
        return False, only_digits(local_part) or None, None

    return False, None, None


def normalize_message(raw: Mapping[str, Any]) -> NormalizedMessage:
    """Map a provider message payload to a NormalizedMessage. Raises ValueError if ids are missing."""
    if not isinstance(raw, Mapping):
        raise ValueError(f"Message payload must be an object, got: {type(raw).__name__}")

    message_id = raw.get("id")
    chat_id = raw.get("chat_id")
    if not message_id or not chat_id:
        raise ValueError(f"Message without id or chat_id: id={message_id!r} chat_id={chat_id!r}")

    message_id = str(message_id).strip()
    chat_id = str(chat_id).strip()
    outbound = bool(raw.get("from_me"))
    is_group, phone_number, lid = resolve_chat_identity(chat_id, raw, outbound)

    from_name = raw.get("from_name")
    return NormalizedMessage(
        message_id=message_id,
        chat_id=chat_id,
        direction="outbound" if outbound else "inbound",
        is_group=is_group,
        phone_number=phone_number,
        lid=lid,
        content=extract_content(raw),
        type=raw.get("type"),
        timestamp=to_datetime(raw.get("timestamp")),
        from_number=str(raw["from"]) if raw.get("from") else None,
        contact_name=from_name.strip() if isinstance(from_name, str) and from_name.strip() else None,
        payload=dict(raw),
    )


def extract_event_name(payload: Mapping[str, Any], headers: Mapping[str, str] | None = None,
                       query: Mapping[str, str] | None = None) -> str:
    """Header override first, then the query string, then the body."""
    headers = {str(k).lower(): v for k, v in (headers or {}).items()}
    header_event = (headers.get(EVENT_HEADER.lower()) or "").strip()
    if header_event:
        return header_event

    query_event = ((query or {}).get("event") or "").strip()
    if query_event:
        return query_event

    event = payload.get("event")
    if isinstance(event, Mapping):
        parts = [str(event[k]).strip() for k in ("type", "event") if event.get(k)]
        if parts:
            return ".".join(parts)
    elif isinstance(event, str) and event.strip():
        return event.strip()

    body_type = payload.get("type")
    if isinstance(body_type, str) and body_type.strip():
        return body_type.strip()

    return "unknown"


# =============================================================================
# INGESTION
# =============================================================================


class WhatsAppWebhookProcessor:
    """Applies one webhook delivery to the chat/message tables."""

    def __init__(self, session: Session):
        self.session = session

    def handle(self, payload: Mapping[str, Any], headers: Mapping[str, str] | None = None,
               query: Mapping[str, str] | None = None) -> dict:
        event_name = extract_event_name(payload, headers, query)
        logger.info(f"whatsapp-webhook: event received: {event_name}")

        self._store_event(event_name, payload, headers or {})

        processed = 0
        messages = payload.get("messages")
        if "messages" in event_name and isinstance(messages, list):
            for raw in messages:
                if self._ingest_safely(raw):
                    processed += 1

        acks = 0
        statuses = payload.get("statuses")
        if "statuses" in event_name and isinstance(statuses, list):
            for status in statuses:
                if self.apply_ack(status):
                    acks += 1

        return {"success": True, "event": event_name, "processed": processed, "acks": acks}

    def _store_event(self, event_name: str, payload: Mapping[str, Any], headers: Mapping[str, str]) -> None:
        try:
            self.session.add(WhatsAppWebhookEvent(
                event=event_name,
                payload=dict(payload),
                headers={str(k).lower(): str(v) for k, v in headers.items()},
            ))
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"whatsapp-webhook: failed to store raw event {event_name}: {str(e)}")

    def _ingest_safely(self, raw, retries: int = 1) -> bool:
        message_id = raw.get("id") if isinstance(raw, Mapping) else None
        try:
            self.ingest_message(raw)
            self.session.commit()
            return True
        except IntegrityError as e:
            self.session.rollback()
            # Another delivery claimed the phone number first; re-resolving merges into its chat
            if retries > 0:
                logger.warning(f"whatsapp-webhook: conflict on message {message_id}, retrying")
                return self._ingest_safely(raw, retries - 1)
            logger.error(f"whatsapp-webhook: failed to process message {message_id}: {str(e)}")
            return False
        except (ValueError, SQLAlchemyError) as e:
            self.session.rollback()
            logger.error(f"whatsapp-webhook: failed to process message {message_id}: {str(e)}")
            return False

    def ingest_message(self, raw: Mapping[str, Any]) -> WhatsAppMessage:
        """Normalize one message and upsert its chat and message rows."""
        message = normalize_message(raw)
        chat_id = message.chat_id
        chat = self.session.get(WhatsAppChat, chat_id)

        if not message.is_group and message.phone_number:
            known = self._find_chat_by_phone(message.phone_number, exclude_id=chat_id)
            if known is not None:
                self._merge_chat(source_id=chat_id, target=known)
                chat_id = known.id
                chat = known

        if chat is None:
            chat = WhatsAppChat(id=chat_id)
            self.session.add(chat)

        chat.name = self._resolve_chat_name(message, chat)
        chat.is_group = message.is_group
        if message.phone_number and not chat.phone_number:
            chat.phone_number = message.phone_number
        if message.lid and not chat.lid:
            chat.lid = message.lid
        chat.last_message_at = message.timestamp or utcnow()
        chat.updated_at = utcnow()
        self.session.flush()

        return self._upsert_message(message, chat_id)

    def _upsert_message(self, message: NormalizedMessage, chat_id: str) -> WhatsAppMessage:
        row = self.session.get(WhatsAppMessage, message.message_id)
        if row is None:
            row = WhatsAppMessage(id=message.message_id)
            self.session.add(row)

        row.chat_id = chat_id
        row.direction = message.direction
        row.from_number = message.from_number
        row.type = message.type or (message.content.kind if message.content else None)
        row.body = message.body
        row.has_media = message.has_media
        row.timestamp = message.timestamp
        row.payload = message.payload
        self.session.flush()
        return row

    def _resolve_chat_name(self, message: NormalizedMessage, chat: WhatsAppChat) -> str:
        """
        Groups: stored name, sender name, raw id.
        Individuals: CRM lead name, inbound sender name, stored name, raw id.
        """
        if message.is_group:
            return chat.name or message.contact_name or chat.id

        lead = find_lead_by_phone(self.session, message.phone_number)
        if lead is not None and lead.nome_completo:
            return lead.nome_completo

        if message.direction == "inbound" and message.contact_name:
            return message.contact_name

        return chat.name or chat.id

    def _find_chat_by_phone(self, phone_number: str, exclude_id: str) -> WhatsAppChat | None:
        return (
            self.session.query(WhatsAppChat)
            .filter(WhatsAppChat.phone_number == phone_number, WhatsAppChat.id != exclude_id)
            .first()
        )

    def _merge_chat(self, source_id: str, target: WhatsAppChat) -> None:
        """Move every message of source_id to target and drop the source chat."""
        moved = (
            self.session.query(WhatsAppMessage)
            .filter(WhatsAppMessage.chat_id == source_id)
            .update({WhatsAppMessage.chat_id: target.id}, synchronize_session=False)
        )

        source = self.session.get(WhatsAppChat, source_id)
        if source is not None:
            if source.lid and not target.lid:
                target.lid = source.lid
            self.session.delete(source)

        self.session.flush()
        # Bulk update bypassed the identity map
        self.session.expire_all()
        logger.info(f"whatsapp-webhook: merged chat {source_id} into {target.id} ({moved} message(s) moved)")

    def apply_ack(self, status: Mapping[str, Any]) -> bool:
        """Best-effort delivery status update by message id."""
        if not isinstance(status, Mapping) or not status.get("id"):
            logger.warning(f"whatsapp-webhook: ignoring status without message id: {status!r}")
            return False

        message_id = str(status["id"])
        ack_status = status.get("status") or status.get("code")
        try:
            updated = (
                self.session.query(WhatsAppMessage)
                .filter(WhatsAppMessage.id == message_id)
                .update({WhatsAppMessage.ack_status: str(ack_status) if ack_status is not None else None},
                        synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"whatsapp-webhook: failed to update ack for {message_id}: {str(e)}")
            return False

        if not updated:
            logger.warning(f"whatsapp-webhook: ack for unknown message {message_id}")
            return False
        return True


def find_lead_by_phone(session: Session, phone_number: str | None) -> Lead | None:
    """
    Match a lead by phone. Both sides are compared as digits, with and without
    the country code, so "(11) 98888-7777" matches 5511988887777.
    """
    if not phone_number:
        return None

    variants = phone_variants(only_digits(phone_number))

    filters = [Lead.telefone == phone_number]
    if variants:
        filters.append(phone_digits(Lead.telefone).in_(variants))

    return (
        session.query(Lead)
        .filter(or_(*filters))
        .order_by(Lead.data_criacao)
        .first()
    )
