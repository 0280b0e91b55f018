"""
BROKERAGE CRM ENGINE
Commission, bonus and messaging back-office for a health-insurance brokerage
"""

from .models import ContractInput, ContractResult
from .processor import ContractProcessor, recompute_commission

__all__ = ['ContractProcessor', 'ContractInput', 'ContractResult', 'recompute_commission']
