"""
Value Adjustment Ledger

Folds a contract's surcharges and discounts into its adjusted monthly value.
All use Decimal for precision with ROUND_HALF_UP rounding.
"""

from decimal import ROUND_HALF_UP, Decimal

from ..models import ACRESCIMO, AdjustmentFold, ProcessingContext, ValueAdjustment


def quantize_money(value: Decimal) -> Decimal:
    """Round to 2 decimal places, half up."""
    return value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)


class AdjustmentLedger:
    """Applies the signed adjustment ledger to a base monthly value."""

    def apply(self, ctx: ProcessingContext) -> AdjustmentFold:
        return self.fold(ctx.contract.mensalidade_total, ctx.adjustments)

    def fold(self, base_value: Decimal, adjustments: list[ValueAdjustment]) -> AdjustmentFold:
        """
        adjusted = base + Σ acrescimos - Σ descontos

        No floor is applied: discounts larger than the base yield a
        negative adjusted value.
        """
        surcharges = sum((a.valor for a in adjustments if a.tipo == ACRESCIMO), Decimal('0'))
        discounts = sum((a.valor for a in adjustments if a.tipo != ACRESCIMO), Decimal('0'))
        net_change = sum((a.signed_value for a in adjustments), Decimal('0'))

        return AdjustmentFold(
            base_value=base_value,
            total_surcharges=surcharges,
            total_discounts=discounts,
            adjusted_value=base_value + net_change,
            adjustment_count=len(adjustments)
        )
