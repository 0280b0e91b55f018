"""Shared fixtures: in-memory databases and contract input builders."""

import pytest

from crm_engine.db import build_session_factory
from crm_engine.models import ContractInput


@pytest.fixture
def session():
    """A session bound to a fresh in-memory SQLite database."""
    factory = build_session_factory("sqlite://", create_schema=True)
    session = factory()
    yield session
    session.close()


@pytest.fixture
def make_input():
    """Build a ContractInput from contract field overrides (1000.00/month, advance mode by default)."""
    def _make(adjustments=None, **contract_fields) -> ContractInput:
        contract = {"codigo_contrato": "CT-001", "mensalidade_total": 1000}
        contract.update(contract_fields)
        return ContractInput.from_dict({"contract": contract, "adjustments": adjustments or []})
    return _make
