"""
Contract and value-adjustment persistence.

Rows are converted to and from the calculation models so the engine never
touches the ORM directly.
"""

import logging
from decimal import Decimal

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from . import db
from .models import (
    DEFAULT_MULTIPLIER,
    CommissionInstallment,
    Contract,
    ContractInput,
    ContractResult,
    ValueAdjustment,
    parse_decimal,
)
from .processor import ContractProcessor

logger = logging.getLogger(__name__)

# Columns a processed contract writes back
CONTRACT_FIELDS = (
    "codigo_contrato",
    "lead_id",
    "mensalidade_total",
    "comissao_multiplicador",
    "comissao_recebimento_adiantado",
    "comissao_parcelas",
    "comissao_prevista",
    "vidas",
    "bonus_por_vida_valor",
    "bonus_por_vida_aplicado",
    "bonus_limite_mensal",
)

_DECIMAL_FIELDS = {
    "mensalidade_total",
    "comissao_multiplicador",
    "comissao_prevista",
    "bonus_por_vida_valor",
    "bonus_limite_mensal",
}

NEW_LEAD_STATUS = "Novo"
DUPLICATE_LEAD_STATUS = "Duplicado"

# Lead columns a client may set directly
LEAD_FIELDS = (
    "nome_completo",
    "telefone",
    "email",
    "cidade",
    "regiao",
    "estado",
    "cep",
    "endereco",
    "origem",
    "tipo_contratacao",
    "operadora_atual",
    "status",
    "responsavel",
    "proximo_retorno",
    "observacoes",
    "data_criacao",
    "ultimo_contato",
    "arquivado",
)

BRAZIL_COUNTRY_CODE = "55"
_PHONE_PUNCTUATION = (" ", "(", ")", "-", "+", ".", "/")


class ContractNotFound(LookupError):
    pass


class AdjustmentNotFound(LookupError):
    pass


class LeadNotFound(LookupError):
    pass


class ContractRepository:
    """Reads and writes contracts."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, contract_id: str) -> db.Contract:
        row = self.session.get(db.Contract, contract_id)
        if row is None:
            raise ContractNotFound(f"Contract not found: {contract_id}")
        return row

    def save(self, fields: dict, contract_id: str | None = None) -> db.Contract:
        """Insert a new contract, or update an existing one when contract_id is given."""
        row = self.get(contract_id) if contract_id else db.Contract()

        for name in CONTRACT_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            if name in _DECIMAL_FIELDS:
                value = parse_decimal(value)
            if name == "comissao_multiplicador" and value is None:
                value = DEFAULT_MULTIPLIER
            if name == "comissao_parcelas":
                value = list(value or [])
            setattr(row, name, value)

        self.session.add(row)
        self.session.flush()
        logger.info(f"Contract saved: {row.id} ({row.codigo_contrato})")
        return row

    def load_input(self, contract_id: str) -> ContractInput:
        """Rebuild the calculation input for a stored contract."""
        row = self.get(contract_id)
        adjustments = AdjustmentRepository(self.session).list_for_contract(contract_id)
        return ContractInput(contract=self.to_model(row), adjustments=adjustments)

    def recompute_and_store(self, contract_id: str, processor: ContractProcessor) -> ContractResult:
        """Re-fold adjustments, recompute the commission and persist it."""
        input_data = self.load_input(contract_id)
        result = processor.recompute(input_data)
        row = self.get(contract_id)
        row.comissao_prevista = parse_decimal(result.updated_contract_fields["comissao_prevista"])
        self.session.flush()
        return result

    @staticmethod
    def to_model(row: db.Contract) -> Contract:
        return Contract(
            id=row.id,
            codigo_contrato=row.codigo_contrato,
            lead_id=row.lead_id,
            mensalidade_total=_as_decimal(row.mensalidade_total) or Decimal("0"),
            comissao_multiplicador=(
                DEFAULT_MULTIPLIER if row.comissao_multiplicador is None else _as_decimal(row.comissao_multiplicador)
            ),
            comissao_recebimento_adiantado=row.comissao_recebimento_adiantado,
            comissao_parcelas=[CommissionInstallment.from_dict(p) for p in row.comissao_parcelas or []],
            comissao_prevista=_as_decimal(row.comissao_prevista),
            vidas=row.vidas or 1,
            bonus_por_vida_valor=_as_decimal(row.bonus_por_vida_valor),
            bonus_por_vida_aplicado=row.bonus_por_vida_aplicado,
            bonus_limite_mensal=_as_decimal(row.bonus_limite_mensal),
        )

    @staticmethod
    def to_dict(row: db.Contract) -> dict:
        data = {"id": row.id}
        for name in CONTRACT_FIELDS:
            value = getattr(row, name)
            if name in _DECIMAL_FIELDS and value is not None:
                value = float(value)
            data[name] = value
        return data


class AdjustmentRepository:
    """Reads and writes contract value adjustments."""

    def __init__(self, session: Session):
        self.session = session

    def list_for_contract(self, contract_id: str) -> list[ValueAdjustment]:
        rows = (
            self.session.query(db.ContractValueAdjustment)
            .filter(db.ContractValueAdjustment.contract_id == contract_id)
            .order_by(db.ContractValueAdjustment.created_at, db.ContractValueAdjustment.id)
            .all()
        )
        return [self.to_model(row) for row in rows]

    def add(self, contract_id: str, adjustment: ValueAdjustment) -> db.ContractValueAdjustment:
        ContractRepository(self.session).get(contract_id)
        row = db.ContractValueAdjustment(
            contract_id=contract_id,
            tipo=adjustment.tipo,
            valor=adjustment.valor,
            motivo=adjustment.motivo,
            created_by=adjustment.created_by,
        )
        self.session.add(row)
        self.session.flush()
        logger.info(f"Adjustment {row.id} added to contract {contract_id}: {adjustment.tipo} {adjustment.valor}")
        return row

    def delete(self, contract_id: str, adjustment_id: int, confirmed: bool = False) -> bool:
        """
        Remove an adjustment. Irreversible, so it only happens with explicit
        confirmation; returns False and leaves the ledger untouched otherwise.
        """
        row = self.session.get(db.ContractValueAdjustment, adjustment_id)
        if row is None or row.contract_id != contract_id:
            raise AdjustmentNotFound(f"Adjustment not found: {adjustment_id}")

        if not confirmed:
            logger.info(f"Deletion of adjustment {adjustment_id} not confirmed; nothing removed")
            return False

        self.session.delete(row)
        self.session.flush()
        logger.info(f"Adjustment {adjustment_id} removed from contract {contract_id}")
        return True

    @staticmethod
    def to_model(row: db.ContractValueAdjustment) -> ValueAdjustment:
        return ValueAdjustment(
            id=row.id,
            tipo=row.tipo,
            valor=_as_decimal(row.valor),
            motivo=row.motivo or "",
            created_by=row.created_by,
            created_at=row.created_at.isoformat() if row.created_at else None,
        )

    @staticmethod
    def to_dict(row: db.ContractValueAdjustment) -> dict:
        return {
            "id": row.id,
            "contract_id": row.contract_id,
            "tipo": row.tipo,
            "valor": float(row.valor),
            "motivo": row.motivo,
            "created_by": row.created_by,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }


def _as_decimal(value) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def load_integration_settings(session: Session, slug: str) -> dict | None:
    """Stored JSON settings of an integration, or None when it was never configured."""
    row = session.query(db.IntegrationSetting).filter(db.IntegrationSetting.slug == slug).one_or_none()
    return dict(row.settings) if row and row.settings else None


def phone_digits(column):
    """SQL expression for a phone column with the usual punctuation stripped."""
    expression = column
    for char in _PHONE_PUNCTUATION:
        expression = func.replace(expression, char, "")
    return expression


def phone_variants(digits: str) -> list[str]:
    """A phone's digits with and without the Brazilian country code."""
    local = digits
    if digits.startswith(BRAZIL_COUNTRY_CODE) and len(digits) > 11:
        local = digits[len(BRAZIL_COUNTRY_CODE):]
    return [local, BRAZIL_COUNTRY_CODE + local] if local else []


class LeadRepository:
    """CRM leads: intake, updates and filtered listing."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, lead_id: str) -> db.Lead:
        row = self.session.get(db.Lead, lead_id)
        if row is None:
            raise LeadNotFound(f"Lead not found: {lead_id}")
        return row

    def is_duplicate(self, telefone: str | None, email: str | None = None) -> bool:
        """True when a lead with the same phone (with or without country code) or e-mail (any case) exists."""
        filters = []
        if telefone:
            filters.append(phone_digits(db.Lead.telefone).in_(phone_variants(telefone)))
        if email:
            filters.append(func.lower(db.Lead.email) == email.lower())
        if not filters:
            return False
        return self.session.query(db.Lead.id).filter(or_(*filters)).first() is not None

    def create(self, record: dict) -> db.Lead:
        """Insert a lead; a known phone or e-mail marks it Duplicado instead of rejecting it."""
        if self.is_duplicate(record.get("telefone"), record.get("email")):
            logger.info(f"Lead {record.get('telefone')} already known, stored as {DUPLICATE_LEAD_STATUS}")
            record = {**record, "status": DUPLICATE_LEAD_STATUS}

        row = db.Lead(**{name: value for name, value in record.items() if name in LEAD_FIELDS})
        self.session.add(row)
        self.session.flush()
        return row

    def update(self, lead_id: str, fields: dict) -> db.Lead:
        row = self.get(lead_id)
        for name, value in fields.items():
            if name in LEAD_FIELDS:
                setattr(row, name, value)
        self.session.flush()
        return row

    def search(self, filters: dict | None = None, limit: int = 100) -> list[db.Lead]:
        """
        Active (non-archived) leads, newest first.

        status, responsavel, origem and tipo_contratacao match case-insensitively;
        telefone matches on digits; email matches case-insensitively.
        """
        filters = filters or {}
        query = self.session.query(db.Lead).filter(db.Lead.arquivado.is_(False))

        for name in ("status", "responsavel", "origem", "tipo_contratacao", "email"):
            if filters.get(name):
                column = getattr(db.Lead, name)
                query = query.filter(func.lower(column) == filters[name].strip().lower())
        if filters.get("telefone"):
            query = query.filter(phone_digits(db.Lead.telefone).in_(phone_variants(filters["telefone"])))

        return query.order_by(db.Lead.data_criacao.desc()).limit(limit).all()

    @staticmethod
    def to_dict(row: db.Lead) -> dict:
        data = {name: getattr(row, name) for name in LEAD_FIELDS}
        for name in ("proximo_retorno", "data_criacao", "ultimo_contato"):
            if data[name] is not None:
                data[name] = data[name].isoformat()
        data["id"] = row.id
        return data
