import pytest

from jobcore.v1.core.exceptions import DuplicateHandlerError, HandlerNotRegisteredError
from jobcore.v1.core.registries import HandlerRegistry, JobHandler, Registry
from jobcore.v1.infra.jobs.catalog import JobType
from jobcore.v1.infra.jobs.handlers import ClickRollupHandler
from jobcore.v1.infra.jobs.registry_init import build_handler_registry


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    assert registry.list() == []

    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]
    assert "test_impl" in registry
    assert len(registry) == 1

    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_freeze():
    registry = Registry[str]("Test")
    registry.register("a", "1")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("b", "2")


def test_handler_registry_indexes_by_declared_type(make_handler):
    handler = make_handler(JobType.EMAIL_DELIVERY)
    registry = HandlerRegistry.build([handler])

    assert registry.handler_for(JobType.EMAIL_DELIVERY) is handler
    assert registry.handler_for("EMAIL_DELIVERY") is handler
    assert registry.is_frozen()
    assert isinstance(handler, JobHandler)


def test_duplicate_handler_is_a_startup_error(make_handler):
    with pytest.raises(DuplicateHandlerError, match="EMAIL_DELIVERY"):
        HandlerRegistry.build(
            [
                make_handler(JobType.EMAIL_DELIVERY),
                make_handler(JobType.EMAIL_DELIVERY),
            ]
        )


def test_missing_handler_raises_at_lookup(make_handler):
    registry = HandlerRegistry.build([make_handler(JobType.EMAIL_DELIVERY)])

    with pytest.raises(HandlerNotRegisteredError, match="STOCK_REFRESH"):
        registry.handler_for(JobType.STOCK_REFRESH)
    assert JobType.STOCK_REFRESH in registry.missing_types()
    assert JobType.EMAIL_DELIVERY not in registry.missing_types()


def test_build_handler_registry_defaults():
    registry = build_handler_registry()

    assert isinstance(registry.handler_for(JobType.CLICK_ROLLUP), ClickRollupHandler)
    # AI tagging needs a governor and a backend
    assert JobType.AI_TAGGING in registry.missing_types()


def test_build_handler_registry_require_all(make_handler):
    with pytest.raises(RuntimeError, match="No handler registered for"):
        build_handler_registry([ClickRollupHandler()], require_all=True)

    complete = build_handler_registry(
        [make_handler(job_type) for job_type in JobType], require_all=True
    )
    assert complete.missing_types() == []
