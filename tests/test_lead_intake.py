"""
Tests for the lead intake API: validation, duplicates, auto-contact trigger,
batch import, updates and filtered listing.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock
from crm_engine.db import IntegrationSetting, Lead
from crm_engine.integrations.leads import (
    LeadIntakeService,
    LeadValidationError,
    parse_datetime_input,
    parse_search_params,
    validate_lead_data,
    validate_lead_update,
)
from crm_engine.repository import LeadNotFound

LEAD = {
    "nome_completo": " Ana Lima ",
    "telefone": "(11) 98888-7777",
    "email": "ana@example.com",
    "origem": "site",
    "tipo_contratacao": "Pessoa Física",
    "responsavel": "Luiza",
}


def ok_response():
    return Mock(status_code=201, reason="Created", text="")


class TestParseDatetimeInput:

    def test_date_only_is_midnight_brasilia(self):
        assert parse_datetime_input("2025-03-10") == datetime(2025, 3, 10, 3, 0, tzinfo=timezone.utc)

    def test_naive_time_is_brasilia(self):
        assert parse_datetime_input("2025-03-10T09:30") == datetime(2025, 3, 10, 12, 30, tzinfo=timezone.utc)

    def test_explicit_offsets(self):
        assert parse_datetime_input("2025-03-10T09:30:00Z") == datetime(2025, 3, 10, 9, 30, tzinfo=timezone.utc)
        assert parse_datetime_input("2025-03-10T09:30:00+0100") == datetime(2025, 3, 10, 8, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["", "amanhã", "2025-13-01", None, 20250310])
    def test_invalid(self, value):
        assert parse_datetime_input(value) is None


class TestValidateLeadData:

    def test_valid_lead(self):
        record = validate_lead_data(LEAD)

        assert record["nome_completo"] == "Ana Lima"
        assert record["telefone"] == "11988887777"
        assert record["status"] == "Novo"
        assert record["arquivado"] is False
        assert record["data_criacao"] == record["ultimo_contato"]
        assert record["cidade"] is None

    def test_every_error_is_reported(self):
        with pytest.raises(LeadValidationError) as excinfo:
            validate_lead_data({"telefone": 11988887777, "email": "not-an-email"})

        errors = excinfo.value.errors
        assert len(errors) == 6
        assert any('"nome_completo"' in e for e in errors)
        assert any('"telefone"' in e for e in errors)
        assert any('"origem"' in e for e in errors)
        assert any('"email"' in e for e in errors)

    def test_invalid_dates(self):
        with pytest.raises(LeadValidationError) as excinfo:
            validate_lead_data({**LEAD, "data_criacao": "ontem", "proximo_retorno": "2025-02-30"})

        assert len(excinfo.value.errors) == 2

    def test_creation_date_is_used_for_last_contact(self):
        record = validate_lead_data({**LEAD, "data_criacao": "2024-12-01"})

        assert record["data_criacao"] == datetime(2024, 12, 1, 3, 0, tzinfo=timezone.utc)
        assert record["ultimo_contato"] == record["data_criacao"]

    def test_validation_error_is_a_value_error(self):
        with pytest.raises(ValueError, match="Invalid lead data"):
            validate_lead_data("not a lead")


class TestValidateLeadUpdate:

    def test_only_present_fields(self):
        fields = validate_lead_update({"telefone": "+55 11 97777-6666", "cidade": "  "})

        assert fields == {"telefone": "5511977776666", "cidade": None}

    def test_blank_label_rejected(self):
        with pytest.raises(LeadValidationError, match='"status" cannot be blank'):
            validate_lead_update({"status": " "})

    def test_clearing_next_contact(self):
        assert validate_lead_update({"proximo_retorno": None}) == {"proximo_retorno": None}


class TestParseSearchParams:

    def test_filters_and_limit(self):
        filters, limit = parse_search_params({"status": "Novo", "telefone": "(11) 98888-7777", "limit": "5"})

        assert filters == {"status": "Novo", "telefone": "11988887777"}
        assert limit == 5

    def test_bad_limit_falls_back(self):
        assert parse_search_params({"limit": "muitos"})[1] == 100


class TestLeadIntakeService:

    @pytest.fixture
    def http(self):
        http = Mock()
        http.post.return_value = ok_response()
        return http

    @pytest.fixture
    def service(self, session, http):
        return LeadIntakeService(session, http=http)

    def _enable_auto_contact(self, session, **settings):
        session.add(IntegrationSetting(slug="whatsapp_auto_contact", settings={"sessionId": "s1", **settings}))
        session.commit()

    def test_create_stores_lead(self, service, session, http):
        lead = service.create(LEAD)

        stored = session.get(Lead, lead.id)
        assert stored.nome_completo == "Ana Lima"
        assert stored.telefone == "11988887777"
        assert stored.status == "Novo"
        http.post.assert_not_called()

    def test_known_phone_is_flagged_duplicate(self, service, session):
        session.add(Lead(nome_completo="Ana", telefone="+55 (11) 98888-7777"))
        session.commit()

        lead = service.create({**LEAD, "email": None})

        assert lead.status == "Duplicado"

    def test_known_email_is_flagged_duplicate(self, service, session):
        session.add(Lead(nome_completo="Ana", telefone="000", email="ANA@example.com"))
        session.commit()

        assert service.create(LEAD).status == "Duplicado"

    def test_first_message_sent_on_create(self, service, session, http):
        self._enable_auto_contact(session, messageFlow=[
            {"message": "Segunda mensagem", "delaySeconds": 60},
            {"message": "Oi {{primeiro_nome}}!", "delaySeconds": 0},
        ])

        lead = service.create(LEAD)

        http.post.assert_called_once()
        assert http.post.call_args.kwargs["json"]["content"] == "Oi Ana!"
        assert http.post.call_args.kwargs["json"]["chatId"] == "5511988887777@c.us"
        assert session.get(Lead, lead.id).status == "Contato Inicial"

    def test_disabled_auto_contact_is_skipped(self, service, session, http):
        self._enable_auto_contact(session, enabled=False, messageFlow=[{"message": "Oi"}])

        lead = service.create(LEAD)

        http.post.assert_not_called()
        assert lead.status == "Novo"

    def test_failed_send_keeps_lead(self, service, session, http):
        self._enable_auto_contact(session, messageFlow=[{"message": "Oi"}])
        http.post.return_value = Mock(status_code=500, reason="Server Error", text="down")

        lead = service.create(LEAD)

        assert session.get(Lead, lead.id).status == "Novo"

    def test_invalid_lead_is_not_stored(self, service, session):
        with pytest.raises(LeadValidationError):
            service.create({"nome_completo": "Sem telefone"})

        assert session.query(Lead).count() == 0

    def test_batch_reports_per_index(self, service, session, http):
        self._enable_auto_contact(session, messageFlow=[{"message": "Oi"}])

        results = service.create_batch([
            LEAD,
            {"nome_completo": "Sem telefone"},
            {**LEAD, "nome_completo": "Bruno", "telefone": "11977776666", "email": None},
        ])

        assert [r["index"] for r in results["success"]] == [0, 2]
        assert results["failed"][0]["index"] == 1
        assert results["failed"][0]["errors"]
        assert session.query(Lead).count() == 2
        http.post.assert_not_called()

    def test_batch_requires_list(self, service):
        with pytest.raises(LeadValidationError, match='"leads" must be an array'):
            service.create_batch({"nome_completo": "Ana"})

    def test_update(self, service, session):
        lead = service.create(LEAD)

        updated = service.update(lead.id, {"status": "Em negociação", "observacoes": "Retornar amanhã"})

        assert updated.status == "Em negociação"
        assert session.get(Lead, lead.id).observacoes == "Retornar amanhã"

    def test_update_unknown_lead(self, service):
        with pytest.raises(LeadNotFound):
            service.update("missing", {"status": "Novo"})

    def test_search_filters(self, service, session):
        service.create(LEAD)
        service.create({**LEAD, "nome_completo": "Bruno", "telefone": "11977776666", "email": None, "origem": "indicação"})
        session.add(Lead(nome_completo="Arquivado", telefone="11955554444", origem="site", arquivado=True))
        session.commit()

        assert len(service.search({})) == 2
        assert [lead.nome_completo for lead in service.search({"origem": "SITE"})] == ["Ana Lima"]
        assert [lead.nome_completo for lead in service.search({"telefone": "(11) 97777-6666"})] == ["Bruno"]
        assert len(service.search({"limit": "1"})) == 1
