"""
Output Builder

Constructs the final API response from processing context.
"""

from decimal import Decimal

from .models import MODE_ADVANCE, ContractResult, ProcessingContext


def to_money(value: Decimal | None) -> float | None:
    """Convert Decimal to float with 2 decimal places."""
    if value is None:
        return None
    return round(float(value), 2)


def _fmt(value) -> str:
    """Format a number as a pt-BR currency string for descriptions."""
    if value is None:
        return "R$ -"
    formatted = f"{value:,.2f}"
    return "R$ " + formatted.replace(",", "_").replace(".", ",").replace("_", ".")


def _pct(value) -> str:
    """Format a percentage with pt-BR decimal separator."""
    return f"{value:.2f}".replace(".", ",") + "%"


class OutputBuilder:
    """Builds the final output response."""

    def build(self, ctx: ProcessingContext) -> ContractResult:
        """Construct the complete contract result from processing context."""
        return ContractResult(
            contract_summary=self._build_contract_summary(ctx),
            calculations=self._build_calculations(ctx),
            installment_plan=self._build_installment_plan(ctx),
            updated_contract_fields=self._build_updated_fields(ctx)
        )

    def _build_contract_summary(self, ctx: ProcessingContext) -> dict:
        """Build contract summary section."""
        contract = ctx.contract
        return {
            "codigo_contrato": contract.codigo_contrato,
            "mensalidade_total": to_money(contract.mensalidade_total),
            "commission_mode": ctx.plan.mode,
            "vidas": contract.vidas,
            "adjustment_count": ctx.fold.adjustment_count
        }

    def _build_calculations(self, ctx: ProcessingContext) -> dict:
        """Build calculations section with value and dynamic description for each field."""
        fold = ctx.fold
        plan = ctx.plan
        commission = ctx.commission
        bonus = ctx.bonus

        if commission.rate_source == "installments":
            rate_desc = f"installment total {_pct(plan.capped_percent)} (ceiling 280%)"
        elif commission.effective_rate is not None:
            rate_desc = f"multiplier {commission.effective_rate}x"
        else:
            rate_desc = "multiplier (not a number)"

        if commission.recomputed:
            commission_desc = (
                f"{_fmt(fold.adjusted_value)} × {rate_desc} = {_fmt(commission.predicted_commission)}"
            )
        else:
            commission_desc = "Not recomputed: adjusted monthly value is not positive or rate is invalid; previous value kept"

        if bonus.is_capped:
            bonus_installments_desc = (
                f"ceil({_fmt(bonus.bonus_total)} / {_fmt(bonus.monthly_cap_total)}) = "
                f"{bonus.installments_needed} month(s) to exhaust the bonus"
            )
        else:
            bonus_installments_desc = "No monthly cap: bonus paid in a single installment"

        return {
            # Value adjustments
            "base_monthly_value": {
                "value": to_money(fold.base_value),
                "description": "Contract monthly value (mensalidade_total) before adjustments"
            },
            "total_surcharges": {
                "value": to_money(fold.total_surcharges),
                "description": "Sum of all 'acrescimo' adjustments"
            },
            "total_discounts": {
                "value": to_money(fold.total_discounts),
                "description": "Sum of all 'desconto' adjustments"
            },
            "adjusted_monthly_value": {
                "value": to_money(fold.adjusted_value),
                "description": f"{_fmt(fold.base_value)} + {_fmt(fold.total_surcharges)} - {_fmt(fold.total_discounts)} = {_fmt(fold.adjusted_value)}"
            },

            # Commission
            "installment_percent_total": {
                "value": float(plan.total_percent),
                "description": f"Sum of installment percentages, {_pct(plan.remaining_percent)} remaining under the 280% ceiling"
            },
            "effective_rate": {
                "value": float(commission.effective_rate) if commission.effective_rate is not None else None,
                "description": f"Rate applied to the adjusted monthly value: {rate_desc}"
            },
            "predicted_commission": {
                "value": to_money(commission.predicted_commission),
                "description": commission_desc
            },

            # Bonus per life
            "bonus_total": {
                "value": to_money(bonus.bonus_total),
                "description": f"{_fmt(bonus.per_life_value)} per life × {bonus.lives} li{'fe' if bonus.lives == 1 else 'ves'} = {_fmt(bonus.bonus_total)}"
            },
            "bonus_monthly_cap_total": {
                "value": to_money(bonus.monthly_cap_total),
                "description": f"{_fmt(bonus.monthly_cap_per_life)} monthly cap per life × {bonus.lives}" if bonus.is_capped else "No monthly cap configured"
            },
            "bonus_installments_needed": {
                "value": bonus.installments_needed,
                "description": bonus_installments_desc
            }
        }

    def _build_installment_plan(self, ctx: ProcessingContext) -> dict:
        """Build installment plan section."""
        plan = ctx.plan
        return {
            "mode": plan.mode,
            "installments": plan.persisted_installments(),
            "total_percent": float(plan.total_percent),
            "remaining_percent": float(plan.remaining_percent),
            "exceeds_ceiling": plan.exceeds_ceiling
        }

    def _build_updated_fields(self, ctx: ProcessingContext) -> dict:
        """
        Build the contract fields to persist.

        comissao_prevista is the computed suggestion unless the caller flagged
        a manual value, in which case the manual value wins.
        """
        contract = ctx.contract
        commission = ctx.commission
        bonus = ctx.bonus

        if contract.comissao_prevista_manual and contract.comissao_prevista is not None:
            persisted_commission = contract.comissao_prevista
        else:
            persisted_commission = commission.predicted_commission

        manual_override = (
            contract.comissao_prevista_manual
            and commission.recomputed
            and persisted_commission != commission.predicted_commission
        )

        return {
            "codigo_contrato": contract.codigo_contrato,
            "lead_id": contract.lead_id,
            "mensalidade_total": to_money(contract.mensalidade_total),
            "comissao_multiplicador": float(contract.comissao_multiplicador) if contract.comissao_multiplicador is not None else None,
            "comissao_recebimento_adiantado": ctx.plan.mode == MODE_ADVANCE,
            "comissao_parcelas": ctx.plan.persisted_installments(),
            "comissao_prevista": to_money(persisted_commission),
            "comissao_prevista_calculada": to_money(commission.predicted_commission),
            "comissao_prevista_manual": bool(manual_override),
            "vidas": contract.vidas,
            "bonus_por_vida_valor": to_money(contract.bonus_por_vida_valor),
            "bonus_por_vida_aplicado": bonus.applied,
            "bonus_limite_mensal": to_money(contract.bonus_limite_mensal)
        }
