"""
Commission Installment Planner

Builds the installment plan for the contract's commission receipt mode.
"""

from decimal import Decimal

from ..models import MODE_ADVANCE, MODE_DISTRIBUTED, InstallmentPlan, ProcessingContext


class InstallmentPlanner:
    """Selects advance or distributed mode and derives the active installments."""

    def plan(self, ctx: ProcessingContext) -> InstallmentPlan:
        """
        Advance mode: no installments, commission uses the multiplier.

        Distributed mode:
        - only entries with percentual > 0 are active (non-numeric entries count as 0)
        - total_percent sums the active entries, the ones that get persisted
        """
        contract = ctx.contract
        active = [p for p in contract.comissao_parcelas if p.percentual > 0]
        total_percent = sum((p.percentual for p in active), Decimal('0'))

        if contract.is_advance:
            return InstallmentPlan(mode=MODE_ADVANCE, installments=[], total_percent=total_percent)

        return InstallmentPlan(mode=MODE_DISTRIBUTED, installments=active, total_percent=total_percent)
