"""
Calculators Package

Provides all calculation components for contract processing.
"""

from .adjustments import AdjustmentLedger, quantize_money
from .bonus import BonusPerLifeCalculator
from .commission import CommissionCalculator
from .installments import InstallmentPlanner

__all__ = [
    "AdjustmentLedger",
    "InstallmentPlanner",
    "CommissionCalculator",
    "BonusPerLifeCalculator",
    "quantize_money",
]
