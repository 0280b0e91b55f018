"""
Input Validation for the Brokerage CRM Engine

Validates contract input before it is saved.
Raises ValueError with clear messages for any constraint violations.
"""

from datetime import datetime

from .models import MAX_COMMISSION_PERCENT, Contract, ContractInput, ValueAdjustment


class InputValidator:
    """Validates contract input according to business rules."""

    def validate(self, input_data: ContractInput) -> None:
        """
        Run all validations. Raises ValueError if any check fails.
        """
        self._validate_contract(input_data.contract)
        self._validate_bonus(input_data.contract)
        self._validate_installments(input_data.contract)
        for adjustment in input_data.adjustments:
            self.validate_adjustment(adjustment)

    def validate_adjustment(self, adjustment: ValueAdjustment) -> None:
        """Validate a single value adjustment."""
        if adjustment.valor <= 0:
            raise ValueError(f"Adjustment valor must be positive, got: {adjustment.valor}")

    def _validate_contract(self, contract: Contract) -> None:
        """Validate contract-level constraints."""
        if not contract.codigo_contrato:
            raise ValueError("codigo_contrato is required")

        if contract.mensalidade_total < 0:
            raise ValueError(f"mensalidade_total cannot be negative, got: {contract.mensalidade_total}")

        if contract.comissao_multiplicador is None:
            raise ValueError("comissao_multiplicador must be numeric")

        if contract.comissao_multiplicador < 0:
            raise ValueError(f"comissao_multiplicador cannot be negative, got: {contract.comissao_multiplicador}")

        if contract.vidas < 1:
            raise ValueError(f"vidas must be at least 1, got: {contract.vidas}")

    def _validate_bonus(self, contract: Contract) -> None:
        """Validate bonus-per-life settings."""
        if contract.bonus_por_vida_valor is not None and contract.bonus_por_vida_valor < 0:
            raise ValueError(f"bonus_por_vida_valor cannot be negative, got: {contract.bonus_por_vida_valor}")

        if contract.bonus_limite_mensal is not None and contract.bonus_limite_mensal < 0:
            raise ValueError(f"bonus_limite_mensal cannot be negative, got: {contract.bonus_limite_mensal}")

    def _validate_installments(self, contract: Contract) -> None:
        """
        Distributed commission rules:
        1. No negative percentages
        2. At least one installment with a positive percentage
        3. Active installment total within the 280% ceiling
        4. Every active installment carries a valid payment date
        """
        if contract.is_advance:
            return

        for i, installment in enumerate(contract.comissao_parcelas):
            if installment.percentual < 0:
                raise ValueError(f"Installment {i + 1} percentual cannot be negative, got: {installment.percentual}")

        active = [p for p in contract.comissao_parcelas if p.percentual > 0]
        if not active:
            raise ValueError(
                "Add at least one commission installment or mark the commission as received in advance"
            )

        total_percent = sum(p.percentual for p in active)
        if total_percent > MAX_COMMISSION_PERCENT:
            raise ValueError(
                f"Installment total ({total_percent}%) cannot exceed {MAX_COMMISSION_PERCENT}% "
                f"of the monthly value"
            )

        for i, installment in enumerate(active):
            if not installment.data_pagamento:
                raise ValueError(f"Installment {i + 1} is missing data_pagamento")
            try:
                datetime.strptime(installment.data_pagamento, "%Y-%m-%d")
            except (TypeError, ValueError):
                raise ValueError(
                    f"Installment {i + 1} data_pagamento must be YYYY-MM-DD, got: {installment.data_pagamento!r}"
                )
