"""
Unit Tests for the Value Adjustment Ledger

Tests verify the signed fold of surcharges and discounts into the adjusted
monthly value.
"""

import pytest
from decimal import Decimal
from crm_engine.calculators.adjustments import AdjustmentLedger, quantize_money
from crm_engine.models import ValueAdjustment


def adj(tipo, valor):
    return ValueAdjustment(tipo=tipo, valor=Decimal(str(valor)))


class TestAdjustmentFold:
    """Test adjusted = base + Σ acrescimos - Σ descontos."""

    @pytest.fixture
    def ledger(self):
        return AdjustmentLedger()

    def test_no_adjustments_keeps_base(self, ledger):
        fold = ledger.fold(Decimal('1000'), [])

        assert fold.adjusted_value == Decimal('1000')
        assert fold.total_surcharges == Decimal('0')
        assert fold.total_discounts == Decimal('0')
        assert fold.adjustment_count == 0

    def test_surcharges_and_discounts(self, ledger):
        fold = ledger.fold(Decimal('1000'), [
            adj('acrescimo', 200),
            adj('desconto', 50),
            adj('acrescimo', 25.50),
        ])

        assert fold.total_surcharges == Decimal('225.50')
        assert fold.total_discounts == Decimal('50')
        assert fold.adjusted_value == Decimal('1175.50')
        assert fold.adjustment_count == 3

    def test_order_does_not_matter(self, ledger):
        """The fold is commutative over the adjustment list."""
        adjustments = [adj('acrescimo', 200), adj('desconto', 75), adj('desconto', 10.10)]

        forward = ledger.fold(Decimal('900'), adjustments)
        backward = ledger.fold(Decimal('900'), list(reversed(adjustments)))

        assert forward.adjusted_value == backward.adjusted_value == Decimal('1014.90')

    def test_no_floor_on_negative_result(self, ledger):
        """Discounts larger than the base produce a negative adjusted value."""
        fold = ledger.fold(Decimal('100'), [adj('desconto', 150)])

        assert fold.adjusted_value == Decimal('-50')

    def test_signed_value(self):
        assert adj('acrescimo', 10).signed_value == Decimal('10')
        assert adj('desconto', 10).signed_value == Decimal('-10')

    def test_adjusted_value_is_base_plus_signed_values(self, ledger):
        adjustments = [adj('acrescimo', 300), adj('desconto', 120.25), adj('desconto', 30)]

        fold = ledger.fold(Decimal('500'), adjustments)

        assert fold.adjusted_value == Decimal('500') + sum(a.signed_value for a in adjustments)
        assert fold.adjusted_value == fold.base_value + fold.total_surcharges - fold.total_discounts


class TestValueAdjustmentParsing:
    """Test ValueAdjustment.from_dict."""

    def test_valid_adjustment(self):
        adjustment = ValueAdjustment.from_dict({"tipo": "Desconto", "valor": "49.90", "motivo": "Promo"})

        assert adjustment.tipo == 'desconto'
        assert adjustment.valor == Decimal('49.90')
        assert adjustment.motivo == 'Promo'

    def test_invalid_tipo(self):
        with pytest.raises(ValueError, match="Invalid adjustment tipo"):
            ValueAdjustment.from_dict({"tipo": "bonus", "valor": 10})

    def test_non_numeric_valor(self):
        with pytest.raises(ValueError, match="must be numeric"):
            ValueAdjustment.from_dict({"tipo": "acrescimo", "valor": "abc"})


class TestQuantizeMoney:

    def test_half_up(self):
        assert quantize_money(Decimal('10.005')) == Decimal('10.01')
        assert quantize_money(Decimal('10.004')) == Decimal('10.00')
