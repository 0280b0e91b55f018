"""
Database schema and session helpers.

Tables mirror the hosted CRM schema for the parts this service reads and
writes: contracts and their value adjustments, leads, integration settings
and the WhatsApp chat/message/event tables.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Contract(Base):
    __tablename__ = "contracts"
    id = Column(String(36), primary_key=True, default=_uuid)
    codigo_contrato = Column(String, nullable=False)
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=True)
    mensalidade_total = Column(Numeric(12, 2), nullable=True)
    comissao_multiplicador = Column(Numeric(8, 4), nullable=False, default=2.8)
    comissao_recebimento_adiantado = Column(Boolean, nullable=False, default=True)
    comissao_parcelas = Column(JSON, nullable=False, default=list)  # [{percentual, data_pagamento}]
    comissao_prevista = Column(Numeric(12, 2), nullable=True)
    vidas = Column(Integer, nullable=False, default=1)
    bonus_por_vida_valor = Column(Numeric(12, 2), nullable=True)
    bonus_por_vida_aplicado = Column(Boolean, nullable=False, default=False)
    bonus_limite_mensal = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    adjustments = relationship(
        "ContractValueAdjustment",
        back_populates="contract",
        cascade="all, delete-orphan",
        order_by="ContractValueAdjustment.id",
    )


class ContractValueAdjustment(Base):
    __tablename__ = "contract_value_adjustments"
    id = Column(Integer, primary_key=True)
    contract_id = Column(String(36), ForeignKey("contracts.id"), nullable=False)
    tipo = Column(String(20), nullable=False)  # acrescimo | desconto
    valor = Column(Numeric(12, 2), nullable=False)
    motivo = Column(Text, nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    contract = relationship("Contract", back_populates="adjustments")


class Lead(Base):
    __tablename__ = "leads"
    id = Column(String(36), primary_key=True, default=_uuid)
    nome_completo = Column(String, nullable=False)
    telefone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    cidade = Column(String, nullable=True)
    regiao = Column(String, nullable=True)
    estado = Column(String, nullable=True)
    cep = Column(String, nullable=True)
    endereco = Column(String, nullable=True)
    origem = Column(String, nullable=True)
    tipo_contratacao = Column(String, nullable=True)
    operadora_atual = Column(String, nullable=True)
    status = Column(String, nullable=True, default="Novo")
    responsavel = Column(String, nullable=True)
    proximo_retorno = Column(DateTime(timezone=True), nullable=True)
    observacoes = Column(Text, nullable=True)
    data_criacao = Column(DateTime(timezone=True), default=utcnow)
    ultimo_contato = Column(DateTime(timezone=True), default=utcnow)
    arquivado = Column(Boolean, nullable=False, default=False)


class IntegrationSetting(Base):
    __tablename__ = "integration_settings"
    id = Column(Integer, primary_key=True)
    slug = Column(String, nullable=False, unique=True)
    settings = Column(JSON, nullable=False, default=dict)


class WhatsAppWebhookEvent(Base):
    __tablename__ = "whatsapp_webhook_events"
    id = Column(Integer, primary_key=True)
    event = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    headers = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class WhatsAppChat(Base):
    __tablename__ = "whatsapp_chats"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    is_group = Column(Boolean, nullable=False, default=False)
    # One chat per phone number; the merge step keeps this true
    phone_number = Column(String, nullable=True, unique=True)
    lid = Column(String, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    messages = relationship("WhatsAppMessage", back_populates="chat")


class WhatsAppMessage(Base):
    __tablename__ = "whatsapp_messages"
    id = Column(String, primary_key=True)
    chat_id = Column(String, ForeignKey("whatsapp_chats.id"), nullable=False)
    direction = Column(String(10), nullable=False)  # inbound | outbound
    from_number = Column(String, nullable=True)
    type = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    has_media = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime(timezone=True), nullable=True)
    ack_status = Column(String, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)

    chat = relationship("WhatsAppChat", back_populates="messages")


def create_db_engine(database_url: str):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def create_db(database_url: str):
    """Create all tables that do not exist yet and return the engine."""
    engine = create_db_engine(database_url)
    Base.metadata.create_all(engine)
    return engine


def configure_session(registry, database_url: str, create_schema: bool = False):
    """Bind a scoped_session registry to a database URL."""
    engine = create_db(database_url) if create_schema else create_db_engine(database_url)
    registry.remove()
    registry.configure(bind=engine)
    return engine


def build_session_factory(database_url: str, create_schema: bool = False):
    engine = create_db(database_url) if create_schema else create_db_engine(database_url)
    return sessionmaker(bind=engine)


@contextmanager
def session_scope(factory):
    """Provide a transactional scope around a series of operations."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
