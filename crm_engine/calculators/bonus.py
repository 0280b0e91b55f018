"""
Bonus Per Life Calculator

Estimates the total per-life bonus owed and how many months a capped
payout takes to exhaust it. Display only: no payment schedule is produced.
"""

import math
from decimal import Decimal

from ..models import BonusCalculation, ProcessingContext


class BonusPerLifeCalculator:
    """Calculates the per-life bonus estimate."""

    def calculate(self, ctx: ProcessingContext) -> BonusCalculation:
        contract = ctx.contract

        # Zero or missing lives count as a single life
        lives = contract.vidas if contract.vidas > 0 else 1
        per_life = contract.bonus_por_vida_valor or Decimal('0')
        cap_per_life = contract.bonus_limite_mensal or Decimal('0')

        bonus_total = per_life * lives

        if cap_per_life > 0:
            cap_total = cap_per_life * lives
            installments_needed = math.ceil(bonus_total / cap_total)
        else:
            cap_total = Decimal('0')
            installments_needed = 1

        return BonusCalculation(
            applied=contract.bonus_por_vida_aplicado,
            per_life_value=per_life,
            lives=lives,
            bonus_total=bonus_total,
            monthly_cap_per_life=cap_per_life,
            monthly_cap_total=cap_total,
            installments_needed=installments_needed
        )
