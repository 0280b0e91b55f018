"""
Tests for contract and value-adjustment persistence (in-memory SQLite).
"""

import pytest
from decimal import Decimal
from crm_engine import ContractProcessor
from crm_engine.db import ContractValueAdjustment, IntegrationSetting, Lead
from crm_engine.models import ValueAdjustment
from crm_engine.repository import (
    AdjustmentNotFound,
    AdjustmentRepository,
    ContractNotFound,
    ContractRepository,
    LeadNotFound,
    LeadRepository,
    load_integration_settings,
    phone_variants,
)


class TestContractRepository:

    @pytest.fixture
    def contracts(self, session):
        return ContractRepository(session)

    def test_installments_round_trip_in_order(self, contracts, session):
        row = contracts.save({
            "codigo_contrato": "CT-001",
            "mensalidade_total": 1000,
            "comissao_recebimento_adiantado": False,
            "comissao_parcelas": [
                {"percentual": 100.0, "data_pagamento": "2024-01-10"},
                {"percentual": 50.5, "data_pagamento": "2024-02-10"},
                {"percentual": 30.0, "data_pagamento": "2024-03-10"},
            ],
        })
        session.commit()
        session.expire_all()

        loaded = contracts.load_input(row.id).contract

        assert [p.percentual for p in loaded.comissao_parcelas] == [Decimal('100'), Decimal('50.5'), Decimal('30')]
        assert [p.data_pagamento for p in loaded.comissao_parcelas] == ["2024-01-10", "2024-02-10", "2024-03-10"]
        assert loaded.comissao_recebimento_adiantado is False

    def test_defaults_applied(self, contracts, session):
        row = contracts.save({"codigo_contrato": "CT-002", "mensalidade_total": "500"})
        session.commit()

        loaded = contracts.load_input(row.id).contract

        assert loaded.comissao_multiplicador == Decimal('2.8')
        assert loaded.comissao_recebimento_adiantado is True
        assert loaded.vidas == 1
        assert loaded.comissao_parcelas == []

    def test_update_existing(self, contracts, session):
        row = contracts.save({"codigo_contrato": "CT-003", "mensalidade_total": 500})
        contracts.save({"mensalidade_total": 750, "vidas": 2}, contract_id=row.id)
        session.commit()

        data = contracts.to_dict(contracts.get(row.id))

        assert data["codigo_contrato"] == "CT-003"
        assert data["mensalidade_total"] == 750.0
        assert data["vidas"] == 2

    def test_unknown_contract(self, contracts):
        with pytest.raises(ContractNotFound):
            contracts.get("missing")

    def test_recompute_and_store(self, contracts, session):
        row = contracts.save({"codigo_contrato": "CT-004", "mensalidade_total": 1000})
        AdjustmentRepository(session).add(row.id, ValueAdjustment(tipo="acrescimo", valor=Decimal("200")))

        result = contracts.recompute_and_store(row.id, ContractProcessor())
        session.commit()

        assert result.updated_contract_fields["comissao_prevista"] == 3360.0
        assert contracts.get(row.id).comissao_prevista == Decimal('3360.00')

    def test_saved_commission_matches_reloaded_recompute(self, contracts, session, make_input):
        processor = ContractProcessor()
        input_data = make_input(
            comissao_recebimento_adiantado=False,
            comissao_parcelas=[
                {"percentual": 180, "data_pagamento": "2025-01-01"},
                {"percentual": 0, "data_pagamento": None},
                {"percentual": 100, "data_pagamento": "2025-02-01"},
            ],
        )
        saved = processor.prepare_for_save(input_data)
        row = contracts.save(saved.updated_contract_fields)
        session.commit()
        session.expire_all()

        reloaded = processor.recompute(contracts.load_input(row.id))

        assert saved.updated_contract_fields["comissao_prevista"] == 2800.0
        assert reloaded.updated_contract_fields["comissao_prevista"] == 2800.0
        assert len(contracts.load_input(row.id).contract.comissao_parcelas) == 2


class TestAdjustmentRepository:

    @pytest.fixture
    def contract_id(self, session):
        row = ContractRepository(session).save({"codigo_contrato": "CT-100", "mensalidade_total": 1000})
        session.commit()
        return row.id

    @pytest.fixture
    def adjustments(self, session):
        return AdjustmentRepository(session)

    def test_add_and_list_in_insertion_order(self, adjustments, contract_id):
        adjustments.add(contract_id, ValueAdjustment(tipo="acrescimo", valor=Decimal("200"), motivo="Dependente"))
        adjustments.add(contract_id, ValueAdjustment(tipo="desconto", valor=Decimal("50"), motivo="Promo"))

        listed = adjustments.list_for_contract(contract_id)

        assert [(a.tipo, a.valor) for a in listed] == [("acrescimo", Decimal("200")), ("desconto", Decimal("50"))]
        assert listed[0].motivo == "Dependente"

    def test_add_to_unknown_contract(self, adjustments):
        with pytest.raises(ContractNotFound):
            adjustments.add("missing", ValueAdjustment(tipo="acrescimo", valor=Decimal("1")))

    def test_delete_requires_confirmation(self, adjustments, contract_id, session):
        row = adjustments.add(contract_id, ValueAdjustment(tipo="desconto", valor=Decimal("50")))

        assert adjustments.delete(contract_id, row.id) is False
        assert session.get(ContractValueAdjustment, row.id) is not None

        assert adjustments.delete(contract_id, row.id, confirmed=True) is True
        assert adjustments.list_for_contract(contract_id) == []

    def test_delete_from_other_contract(self, adjustments, contract_id, session):
        row = adjustments.add(contract_id, ValueAdjustment(tipo="desconto", valor=Decimal("50")))
        other = ContractRepository(session).save({"codigo_contrato": "CT-200", "mensalidade_total": 10})

        with pytest.raises(AdjustmentNotFound):
            adjustments.delete(other.id, row.id, confirmed=True)

    def test_fold_after_delete(self, adjustments, contract_id, session):
        contracts = ContractRepository(session)
        processor = ContractProcessor()
        row = adjustments.add(contract_id, ValueAdjustment(tipo="acrescimo", valor=Decimal("200")))
        contracts.recompute_and_store(contract_id, processor)

        adjustments.delete(contract_id, row.id, confirmed=True)
        result = contracts.recompute_and_store(contract_id, processor)

        assert result.calculations["adjusted_monthly_value"]["value"] == 1000.0
        assert result.updated_contract_fields["comissao_prevista"] == 2800.0


class TestIntegrationSettings:

    def test_missing_returns_none(self, session):
        assert load_integration_settings(session, "facebook_ads_manager") is None

    def test_stored_document(self, session):
        session.add(IntegrationSetting(slug="facebook_ads_manager", settings={"verifyToken": "abc"}))
        session.commit()

        assert load_integration_settings(session, "facebook_ads_manager") == {"verifyToken": "abc"}


class TestLeadRepository:

    @pytest.fixture
    def leads(self, session):
        return LeadRepository(session)

    def test_phone_variants(self):
        assert phone_variants("5511988887777") == ["11988887777", "5511988887777"]
        assert phone_variants("11988887777") == ["11988887777", "5511988887777"]
        assert phone_variants("") == []

    def test_duplicate_by_formatted_phone(self, leads, session):
        session.add(Lead(nome_completo="Ana", telefone="+55 (11) 98888-7777"))
        session.commit()

        assert leads.is_duplicate("11988887777") is True
        assert leads.is_duplicate("11977776666") is False
        assert leads.is_duplicate(None, None) is False

    def test_create_flags_duplicate(self, leads, session):
        leads.create({"nome_completo": "Ana", "telefone": "11988887777", "status": "Novo"})
        second = leads.create({"nome_completo": "Ana L.", "telefone": "11988887777", "status": "Novo"})

        assert second.status == "Duplicado"

    def test_unknown_lead(self, leads):
        with pytest.raises(LeadNotFound):
            leads.get("missing")

    def test_to_dict(self, leads, session):
        row = leads.create({"nome_completo": "Ana", "telefone": "11988887777"})
        session.commit()

        data = LeadRepository.to_dict(row)

        assert data["id"] == row.id
        assert data["nome_completo"] == "Ana"
        assert data["arquivado"] is False
        assert isinstance(data["data_criacao"], str)
