"""
Domain Models for the Brokerage CRM Engine

These dataclasses provide type-safe representations of the contract entities
that feed the commission and bonus calculations.
All monetary and percentage values use Decimal for precision.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

ACRESCIMO = "acrescimo"
DESCONTO = "desconto"
ADJUSTMENT_TYPES = (ACRESCIMO, DESCONTO)

MAX_COMMISSION_PERCENT = Decimal("280")
DEFAULT_MULTIPLIER = Decimal("2.8")

MODE_ADVANCE = "advance"
MODE_DISTRIBUTED = "distributed"


def parse_decimal(value, default: Decimal | None = None) -> Decimal | None:
    """Parse user/API input into a Decimal, returning `default` for blanks and garbage."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    text = str(value).strip()
    if not text:
        return default
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return default
    return parsed if parsed.is_finite() else default


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


_TRUE_STRINGS = ("true", "1", "yes", "sim", "on")
_FALSE_STRINGS = ("false", "0", "no", "nao", "não", "off")


def parse_bool(value, default: bool = False) -> bool:
    """Parse a JSON, form or query-string flag. Blank means `default`; unknown strings are rejected."""
    if _is_blank(value):
        return default
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"Invalid boolean value: {value!r}")
    return bool(value)


# =============================================================================
# INPUT MODELS
# =============================================================================


@dataclass
class ValueAdjustment:
    """A signed surcharge or discount applied to a contract's monthly value."""

    tipo: str  # 'acrescimo' or 'desconto'
    valor: Decimal
    motivo: str = ""
    created_by: str | None = None
    created_at: str | None = None
    id: int | None = None

    @property
    def signed_value(self) -> Decimal:
        if self.tipo == ACRESCIMO:
            return self.valor
        return -self.valor

    @classmethod
    def from_dict(cls, data: dict) -> "ValueAdjustment":
        tipo = str(data.get("tipo", "")).strip().lower()
        if tipo not in ADJUSTMENT_TYPES:
            raise ValueError(f"Invalid adjustment tipo: {data.get('tipo')!r}. Must be 'acrescimo' or 'desconto'")
        valor = parse_decimal(data.get("valor"))
        if valor is None:
            raise ValueError(f"Adjustment valor must be numeric, got: {data.get('valor')!r}")
        return cls(
            tipo=tipo,
            valor=valor,
            motivo=data.get("motivo") or "",
            created_by=data.get("created_by"),
            created_at=data.get("created_at"),
            id=data.get("id"),
        )


@dataclass
class CommissionInstallment:
    """One percentage-based commission installment."""

    percentual: Decimal
    data_pagamento: str | None = None  # YYYY-MM-DD

    @classmethod
    def from_dict(cls, data: dict) -> "CommissionInstallment":
        # Non-numeric percentages count as zero and are dropped from the active plan
        return cls(
            percentual=parse_decimal(data.get("percentual"), Decimal("0")),
            data_pagamento=data.get("data_pagamento") or None,
        )

    def to_dict(self) -> dict:
        return {"percentual": float(self.percentual), "data_pagamento": self.data_pagamento}


@dataclass
class Contract:
    """Commission-relevant fields of a brokerage contract."""

    codigo_contrato: str = ""
    mensalidade_total: Decimal = Decimal("0")
    comissao_multiplicador: Decimal | None = DEFAULT_MULTIPLIER  # None = not a number
    comissao_recebimento_adiantado: bool = True
    comissao_parcelas: list[CommissionInstallment] = field(default_factory=list)
    comissao_prevista: Decimal | None = None
    comissao_prevista_manual: bool = False  # user typed over the suggestion
    vidas: int = 1
    bonus_por_vida_valor: Decimal | None = None
    bonus_por_vida_aplicado: bool = False
    bonus_limite_mensal: Decimal | None = None
    id: str | None = None
    lead_id: str | None = None

    @property
    def is_advance(self) -> bool:
        return self.comissao_recebimento_adiantado

    @classmethod
    def from_dict(cls, data: dict) -> "Contract":
        raw_multiplier = data.get("comissao_multiplicador")
        # Blank multiplier falls back to the schema default; garbage stays unparseable
        multiplier = DEFAULT_MULTIPLIER if _is_blank(raw_multiplier) else parse_decimal(raw_multiplier)

        vidas = parse_decimal(data.get("vidas"), Decimal("1"))
        installments = [CommissionInstallment.from_dict(p) for p in data.get("comissao_parcelas") or []]

        return cls(
            codigo_contrato=str(data.get("codigo_contrato") or "").strip(),
            mensalidade_total=parse_decimal(data.get("mensalidade_total"), Decimal("0")),
            comissao_multiplicador=multiplier,
            comissao_recebimento_adiantado=parse_bool(data.get("comissao_recebimento_adiantado"), default=True),
            comissao_parcelas=installments,
            comissao_prevista=parse_decimal(data.get("comissao_prevista")),
            comissao_prevista_manual=parse_bool(data.get("comissao_prevista_manual")),
            vidas=int(vidas),
            bonus_por_vida_valor=parse_decimal(data.get("bonus_por_vida_valor")),
            bonus_por_vida_aplicado=parse_bool(data.get("bonus_por_vida_aplicado")),
            bonus_limite_mensal=parse_decimal(data.get("bonus_limite_mensal")),
            id=data.get("id"),
            lead_id=data.get("lead_id") or None,
        )


@dataclass
class ContractInput:
    """Complete input for processing a contract."""

    contract: Contract
    adjustments: list[ValueAdjustment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ContractInput":
        return cls(
            contract=Contract.from_dict(data["contract"]),
            adjustments=[ValueAdjustment.from_dict(a) for a in data.get("adjustments", [])],
        )


# =============================================================================
# OUTPUT / RESULT MODELS
# =============================================================================


@dataclass
class AdjustmentFold:
    """Result of folding the adjustment ledger into the base value."""

    base_value: Decimal = Decimal("0")
    total_surcharges: Decimal = Decimal("0")
    total_discounts: Decimal = Decimal("0")
    adjusted_value: Decimal = Decimal("0")
    adjustment_count: int = 0


@dataclass
class InstallmentPlan:
    """Commission installment plan for the selected mode."""

    mode: str = MODE_ADVANCE
    installments: list[CommissionInstallment] = field(default_factory=list)  # active entries only
    total_percent: Decimal = Decimal("0")  # sum over every entry, as typed

    @property
    def capped_percent(self) -> Decimal:
        return min(self.total_percent, MAX_COMMISSION_PERCENT)

    @property
    def remaining_percent(self) -> Decimal:
        return max(Decimal("0"), MAX_COMMISSION_PERCENT - self.total_percent)

    @property
    def exceeds_ceiling(self) -> bool:
        return self.total_percent > MAX_COMMISSION_PERCENT

    def persisted_installments(self) -> list[dict]:
        if self.mode == MODE_ADVANCE:
            return []
        return [p.to_dict() for p in self.installments]


@dataclass
class CommissionCalculation:
    """Results of the commission calculation."""

    rate_source: str = "multiplier"  # 'multiplier' or 'installments'
    effective_rate: Decimal | None = None
    predicted_commission: Decimal | None = None
    recomputed: bool = False


@dataclass
class BonusCalculation:
    """Results of the bonus-per-life estimate."""

    applied: bool = False
    per_life_value: Decimal = Decimal("0")
    lives: int = 1
    bonus_total: Decimal = Decimal("0")
    monthly_cap_per_life: Decimal = Decimal("0")
    monthly_cap_total: Decimal = Decimal("0")
    installments_needed: int = 1

    @property
    def is_capped(self) -> bool:
        return self.monthly_cap_total > 0


@dataclass
class ProcessingContext:
    """
    Holds all intermediate state during contract processing.
    This is the "bag" that flows through the pipeline.
    """

    # Input (immutable during processing)
    contract: Contract
    adjustments: list[ValueAdjustment] = field(default_factory=list)

    # Step results (populated as we go)
    fold: AdjustmentFold = field(default_factory=AdjustmentFold)
    plan: InstallmentPlan = field(default_factory=InstallmentPlan)
    commission: CommissionCalculation = field(default_factory=CommissionCalculation)
    bonus: BonusCalculation = field(default_factory=BonusCalculation)


@dataclass
class ContractResult:
    """Final output of contract processing."""

    contract_summary: dict
    calculations: dict
    installment_plan: dict
    updated_contract_fields: dict
