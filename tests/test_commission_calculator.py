"""
Unit Tests for Commission Calculator

Tests verify comissao_prevista for advance (multiplier) and distributed
(installment percentage) contracts.
"""

import pytest
from decimal import Decimal
from crm_engine.calculators import AdjustmentLedger, CommissionCalculator, InstallmentPlanner
from crm_engine.models import ProcessingContext
from crm_engine.processor import recompute_commission


class TestCommissionCalculator:
    """Test the effective rate and predicted commission."""

    @pytest.fixture
    def calculator(self):
        return CommissionCalculator()

    def _context(self, input_data):
        ctx = ProcessingContext(contract=input_data.contract, adjustments=input_data.adjustments)
        ctx.fold = AdjustmentLedger().apply(ctx)
        ctx.plan = InstallmentPlanner().plan(ctx)
        return ctx

    def test_advance_uses_multiplier(self, calculator, make_input):
        """1000 + 200 surcharge at the default 2.8 multiplier = 3360.00."""
        input_data = make_input(adjustments=[{"tipo": "acrescimo", "valor": 200}])
        result = calculator.calculate(self._context(input_data))

        assert result.rate_source == 'multiplier'
        assert result.effective_rate == Decimal('2.8')
        assert result.predicted_commission == Decimal('3360.00')
        assert result.recomputed is True

    def test_custom_multiplier(self, calculator, make_input):
        input_data = make_input(mensalidade_total="850.45", comissao_multiplicador="1.5")
        result = calculator.calculate(self._context(input_data))

        # 850.45 × 1.5 = 1275.675 -> half up
        assert result.predicted_commission == Decimal('1275.68')

    def test_blank_multiplier_defaults_to_2_8(self, calculator, make_input):
        input_data = make_input(comissao_multiplicador="")
        result = calculator.calculate(self._context(input_data))

        assert result.effective_rate == Decimal('2.8')
        assert result.predicted_commission == Decimal('2800.00')

    def test_distributed_uses_installment_total(self, calculator, make_input):
        """1200 adjusted at 100% + 50% = 1800.00."""
        input_data = make_input(
            adjustments=[{"tipo": "acrescimo", "valor": 200}],
            comissao_recebimento_adiantado=False,
            comissao_parcelas=[
                {"percentual": 100, "data_pagamento": "2024-01-10"},
                {"percentual": 50, "data_pagamento": "2024-02-10"},
            ],
        )
        result = calculator.calculate(self._context(input_data))

        assert result.rate_source == 'installments'
        assert result.effective_rate == Decimal('1.5')
        assert result.predicted_commission == Decimal('1800.00')

    def test_distributed_rate_capped_at_280(self, calculator, make_input):
        input_data = make_input(
            comissao_recebimento_adiantado=False,
            comissao_parcelas=[{"percentual": 200}, {"percentual": 100}],
        )
        result = calculator.calculate(self._context(input_data))

        assert result.effective_rate == Decimal('2.8')
        assert result.predicted_commission == Decimal('2800.00')

    def test_distributed_without_percentages_falls_back_to_multiplier(self, calculator, make_input):
        input_data = make_input(
            comissao_recebimento_adiantado=False,
            comissao_parcelas=[{"percentual": 0}],
            comissao_multiplicador=2,
        )
        result = calculator.calculate(self._context(input_data))

        assert result.rate_source == 'multiplier'
        assert result.predicted_commission == Decimal('2000.00')

    def test_non_positive_adjusted_value_keeps_previous(self, calculator, make_input):
        """No recomputation when discounts wipe out the monthly value."""
        input_data = make_input(
            mensalidade_total=100,
            comissao_prevista="999.99",
            adjustments=[{"tipo": "desconto", "valor": 150}],
        )
        result = calculator.calculate(self._context(input_data))

        assert result.recomputed is False
        assert result.predicted_commission == Decimal('999.99')

    def test_zero_value_without_previous_stays_empty(self, calculator, make_input):
        input_data = make_input(mensalidade_total=0)
        result = calculator.calculate(self._context(input_data))

        assert result.recomputed is False
        assert result.predicted_commission is None

    def test_non_numeric_multiplier_keeps_previous(self, calculator, make_input):
        input_data = make_input(comissao_multiplicador="abc", comissao_prevista=500)
        result = calculator.calculate(self._context(input_data))

        assert result.effective_rate is None
        assert result.recomputed is False
        assert result.predicted_commission == Decimal('500')


class TestRecomputeCommission:
    """Test the pure recomputation helper."""

    def test_matches_calculator(self, make_input):
        input_data = make_input(adjustments=[
            {"tipo": "acrescimo", "valor": 200},
            {"tipo": "desconto", "valor": 100},
        ])

        assert recompute_commission(input_data) == Decimal('3080.00')

    def test_is_deterministic(self, make_input):
        input_data = make_input(mensalidade_total="1234.56", comissao_multiplicador="2.35")

        assert recompute_commission(input_data) == recompute_commission(input_data)

    def test_180_percent_plan(self, make_input):
        input_data = make_input(
            comissao_recebimento_adiantado=False,
            comissao_parcelas=[
                {"percentual": 100, "data_pagamento": "2025-01-01"},
                {"percentual": 80, "data_pagamento": "2025-02-01"},
            ],
        )

        assert recompute_commission(input_data) == Decimal('1800.00')
