"""
Contract Processor - Main Orchestrator

Coordinates the commission pipeline through discrete, testable steps.
"""

import logging
from decimal import Decimal
from typing import Dict, Any

from .models import ContractInput, ContractResult, ProcessingContext
from .validators import InputValidator
from .calculators import (
    AdjustmentLedger,
    InstallmentPlanner,
    CommissionCalculator,
    BonusPerLifeCalculator
)
from .output import OutputBuilder

logger = logging.getLogger(__name__)


class ContractProcessor:
    """
    Main orchestrator for contract processing.

    Implements a clear pipeline pattern:
    1. Validate Input (save path only)
    2. Build Context
    3. Fold Value Adjustments
    4. Build Installment Plan
    5. Calculate Commission
    6. Calculate Bonus Per Life
    7. Build Output
    """

    def __init__(self):
        self.validator = InputValidator()
        self.adjustment_ledger = AdjustmentLedger()
        self.installment_planner = InstallmentPlanner()
        self.commission_calculator = CommissionCalculator()
        self.bonus_calculator = BonusPerLifeCalculator()
        self.output_builder = OutputBuilder()

    def recompute(self, input_data: ContractInput) -> ContractResult:
        """
        Recompute every derived field without validating.

        This is the path taken on each input change; validation only
        happens when the contract is saved.
        """
        ctx = ProcessingContext(contract=input_data.contract, adjustments=list(input_data.adjustments))

        ctx.fold = self.adjustment_ledger.apply(ctx)
        ctx.plan = self.installment_planner.plan(ctx)
        ctx.commission = self.commission_calculator.calculate(ctx)
        ctx.bonus = self.bonus_calculator.calculate(ctx)

        return self.output_builder.build(ctx)

    def prepare_for_save(self, input_data: ContractInput) -> ContractResult:
        """
        Validate and recompute. Raises ValueError on any rule violation,
        in which case nothing should be persisted.
        """
        self.validator.validate(input_data)
        result = self.recompute(input_data)
        logger.info(f"Contract prepared for save: {input_data.contract.codigo_contrato}")
        return result

    def process_from_dict(self, data: Dict[str, Any], validate: bool = False) -> Dict[str, Any]:
        """
        Process a contract from raw dictionary input.

        Convenience method for API usage.
        """
        input_data = ContractInput.from_dict(data)
        if validate:
            result = self.prepare_for_save(input_data)
        else:
            result = self.recompute(input_data)
        return result_to_dict(result)


def result_to_dict(result: ContractResult) -> Dict[str, Any]:
    """Convert ContractResult to dictionary for API response."""
    return {
        "contract_summary": result.contract_summary,
        "calculations": result.calculations,
        "installment_plan": result.installment_plan,
        "updated_contract_fields": result.updated_contract_fields
    }


def recompute_commission(input_data: ContractInput) -> Decimal | None:
    """
    Pure recomputation of comissao_prevista for the given inputs.

    Returns the previous value unchanged when no recomputation applies.
    """
    ctx = ProcessingContext(contract=input_data.contract, adjustments=list(input_data.adjustments))
    ctx.fold = AdjustmentLedger().apply(ctx)
    ctx.plan = InstallmentPlanner().plan(ctx)
    return CommissionCalculator().calculate(ctx).predicted_commission
