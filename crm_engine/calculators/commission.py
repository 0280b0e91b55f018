"""
Commission Calculator

Derives the predicted commission from the adjusted monthly value.
"""

from decimal import Decimal

from .adjustments import quantize_money
from ..models import MAX_COMMISSION_PERCENT, CommissionCalculation, ProcessingContext


class CommissionCalculator:
    """Calculates comissao_prevista for advance and distributed contracts."""

    def calculate(self, ctx: ProcessingContext) -> CommissionCalculation:
        """
        effective_rate =
            min(total_installment_percent, 280) / 100   when distributed and total > 0
            multiplier                                  otherwise

        predicted_commission = adjusted_value × effective_rate

        When the adjusted value is not positive, or the rate is not a number,
        nothing is recomputed and the contract's previous comissao_prevista
        is carried through unchanged.
        """
        contract = ctx.contract
        adjusted_value = ctx.fold.adjusted_value
        total_percent = ctx.plan.total_percent

        if not contract.is_advance and total_percent > 0:
            rate_source = "installments"
            effective_rate = min(total_percent, MAX_COMMISSION_PERCENT) / Decimal('100')
        else:
            rate_source = "multiplier"
            effective_rate = contract.comissao_multiplicador

        if adjusted_value <= 0 or effective_rate is None:
            return CommissionCalculation(
                rate_source=rate_source,
                effective_rate=effective_rate,
                predicted_commission=contract.comissao_prevista,
                recomputed=False
            )

        return CommissionCalculation(
            rate_source=rate_source,
            effective_rate=effective_rate,
            predicted_commission=quantize_money(adjusted_value * effective_rate),
            recomputed=True
        )
