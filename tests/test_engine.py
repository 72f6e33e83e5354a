"""
Integration tests for the engine composition root

Runs full certificate lifecycles against in-memory and SQLite storage.
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from cdt_core.audit import AuditAction
from cdt_core.cache import FailSafeCache, InMemoryCache
from cdt_core.certificates import CertificateStatus
from cdt_core.config import CdtConfig
from cdt_core.engine import CdtEngine, create_engine
from cdt_core.errors import PreconditionFailedError
from cdt_core.storage import InMemoryStorage, SQLiteStorage


TODAY = date(2026, 1, 15)


def make_config(**overrides) -> CdtConfig:
    return CdtConfig(_env_file=None, **overrides)


class TestCdtEngine:
    """Test engine wiring"""

    def test_defaults_to_memory(self):
        with create_engine(make_config(), today=lambda: TODAY) as engine:
            assert isinstance(engine.storage, InMemoryStorage)
            assert isinstance(engine.cache, FailSafeCache)
            assert isinstance(engine.cache.backend, InMemoryCache)

    def test_rules_come_from_config(self):
        engine = create_engine(make_config(min_amount=Decimal("1000")), today=lambda: TODAY)
        certificate = engine.lifecycle.create("user-1", 5000, "6", term_days=60)
        assert certificate.amount == Decimal("5000")

        strict = create_engine(make_config(max_term_days=90), today=lambda: TODAY)
        with pytest.raises(PreconditionFailedError, match="Maximum term is 90 days"):
            strict.lifecycle.create("user-1", 1_000_000, "6", term_days=180)

    def test_months_use_configured_days(self):
        engine = create_engine(make_config(days_per_month=31), today=lambda: TODAY)
        certificate = engine.lifecycle.create("user-1", 1_000_000, "6", term_months=3)
        assert certificate.term_days == 93

    def test_injected_components(self):
        storage = InMemoryStorage()
        cache = InMemoryCache()
        engine = CdtEngine(make_config(), storage=storage, cache=cache)
        assert engine.storage is storage
        assert engine.cache.backend is cache

    def test_close_releases_resources(self):
        storage = MagicMock(spec=InMemoryStorage)
        cache = MagicMock(spec=InMemoryCache)
        engine = CdtEngine(make_config(), storage=storage, cache=cache)
        engine.close()
        storage.close.assert_called_once()
        cache.close.assert_called_once()

    def test_create_engine_configures_logging_on_request(self):
        settings = make_config(log_level="DEBUG")
        with patch("cdt_core.engine.setup_logging_from_config") as configure:
            create_engine(settings, today=lambda: TODAY)
            configure.assert_not_called()
            create_engine(settings, configure_logging=True, today=lambda: TODAY)
            configure.assert_called_once_with(settings)


class TestFullLifecycle:
    """End-to-end runs through the public components"""

    @pytest.fixture(params=["memory", "sqlite"])
    def engine(self, request, tmp_path):
        settings = make_config(
            storage_backend=request.param,
            database_path=str(tmp_path / "engine.db")
        )
        engine = create_engine(settings, today=lambda: TODAY)
        yield engine
        engine.close()

    def test_draft_to_completion(self, engine):
        certificate = engine.lifecycle.create("user-1", 10_000_000, "8.5", term_days=90)
        engine.lifecycle.update_draft(certificate.id, "user-1", {'amount': 12_000_000})
        engine.lifecycle.submit_for_review(certificate.id, "user-1")
        assert [c.id for c in engine.queries.get_pending()] == [certificate.id]

        engine.lifecycle.approve(certificate.id, "admin-1", notes="ok")
        stats = engine.queries.get_admin_stats()
        assert stats.total_invested == Decimal("12000000")

        completed = engine.lifecycle.complete_matured(as_of=TODAY + timedelta(days=90))
        assert [c.id for c in completed] == [certificate.id]
        assert completed[0].status == CertificateStatus.COMPLETED

        trail = engine.queries.get_audit_log(certificate.id, "user-1")
        assert [e.action for e in trail] == [
            AuditAction.CREATED, AuditAction.UPDATED, AuditAction.SUBMITTED_FOR_REVIEW,
            AuditAction.APPROVED, AuditAction.COMPLETED,
        ]
        assert engine.audit_log.verify_integrity(certificate.id)['valid']

    def test_rejection_and_cleanup(self, engine):
        certificate = engine.lifecycle.create("user-1", 2_000_000, "5", term_days=180)
        engine.lifecycle.submit_for_review(certificate.id, "user-1")
        rejected = engine.lifecycle.reject(certificate.id, "admin-1", "missing documents")
        assert rejected.admin_notes == "missing documents"

        with pytest.raises(PreconditionFailedError, match="rejected"):
            engine.lifecycle.delete(certificate.id, "user-1", "user")

        page = engine.queries.get_user_certificates("user-1", status="rejected")
        assert page.total == 1
        assert page.items[0].reviewed_by == "admin-1"

    def test_sqlite_state_survives_restart(self, tmp_path):
        settings = make_config(storage_backend="sqlite", database_path=str(tmp_path / "restart.db"))

        with create_engine(settings, today=lambda: TODAY) as engine:
            certificate = engine.lifecycle.create("user-1", 3_000_000, "7", term_days=120)
            engine.lifecycle.submit_for_review(certificate.id, "user-1")
            assert isinstance(engine.storage, SQLiteStorage)

        with create_engine(settings, today=lambda: TODAY) as engine:
            reloaded = engine.queries.get_certificate(certificate.id, "user-1")
            assert reloaded.status == CertificateStatus.PENDING
            assert reloaded.estimated_return == certificate.estimated_return
            assert engine.audit_log.verify_integrity(certificate.id)['total_entries'] == 2
