"""Unit tests for object graph construction."""

import sys
import types

import pytest

from booking_sync.bootstrap import (
    build_container,
    build_default_container,
    import_string,
    load_collaborators,
)
from booking_sync.clock import SystemClock
from booking_sync.config import Settings


@pytest.fixture
def collaborator_module(monkeypatch, order_source, calendar) -> str:
    """Registers an importable module exposing both collaborator factories."""
    module = types.ModuleType("shop_adapters")
    module.make_source = lambda settings: order_source
    module.make_calendar = lambda settings: calendar
    monkeypatch.setitem(sys.modules, "shop_adapters", module)
    return "shop_adapters"


class TestImportString:
    def test_resolves_attribute(self) -> None:
        assert import_string("booking_sync.clock:SystemClock") is SystemClock

    @pytest.mark.parametrize("path", ["booking_sync.clock", ":SystemClock", "booking_sync.clock:"])
    def test_rejects_malformed_path(self, path: str) -> None:
        with pytest.raises(ValueError):
            import_string(path)

    def test_missing_attribute(self) -> None:
        with pytest.raises(ImportError):
            import_string("booking_sync.clock:NoSuchClock")


class TestLoadCollaborators:
    def test_requires_both_factories(self, test_settings: Settings) -> None:
        with pytest.raises(ValueError):
            load_collaborators(test_settings)

    def test_calls_factories_with_settings(
        self, test_settings: Settings, collaborator_module: str, order_source, calendar
    ) -> None:
        settings = test_settings.model_copy(
            update={
                "order_source_factory": f"{collaborator_module}:make_source",
                "calendar_backend_factory": f"{collaborator_module}:make_calendar",
            }
        )

        assert load_collaborators(settings) == (order_source, calendar)


class TestSettings:
    def test_in_process_scheduler_is_opt_in(self, monkeypatch) -> None:
        monkeypatch.delenv("SYNC_ENABLED", raising=False)

        assert Settings(_env_file=None).sync_enabled is False


class TestBuildContainer:
    @pytest.mark.asyncio
    async def test_wires_settings_into_services(
        self, test_settings: Settings, session_factory, order_source, calendar, clock
    ) -> None:
        container = build_container(
            test_settings, session_factory, order_source, calendar, clock=clock
        )

        assert container.clock is clock
        assert container.engine.batch_size == test_settings.batch_size
        assert container.lock.max_age == test_settings.max_sync_duration
        assert container.retry_queue.max_retries == test_settings.max_retries
        assert container.orchestrator.max_sync_duration == test_settings.max_sync_duration
        assert container.processor.ledger is container.ledger
        assert container.engine.processor is container.processor
        assert container.availability.session_duration == test_settings.session_duration

    @pytest.mark.asyncio
    async def test_scheduler_uses_sync_interval(self, container, test_settings: Settings) -> None:
        scheduler = container.scheduler()

        assert scheduler.interval == test_settings.sync_interval
        assert scheduler.orchestrator is container.orchestrator
        assert scheduler.running

    @pytest.mark.asyncio
    async def test_default_container_owns_its_engine(
        self, test_settings: Settings, collaborator_module: str, order_source
    ) -> None:
        settings = test_settings.model_copy(
            update={
                "order_source_factory": f"{collaborator_module}:make_source",
                "calendar_backend_factory": f"{collaborator_module}:make_calendar",
            }
        )

        container = build_default_container(settings)
        try:
            assert container.order_source is order_source
            assert isinstance(container.clock, SystemClock)
            assert container.db_engine is not None
        finally:
            await container.close()
