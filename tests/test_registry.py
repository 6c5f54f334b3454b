import pytest

from jobengine.errors import ExecutorNotFoundError, RegistryError
from jobengine.registry import ExecutorRegistry, JobExecutor

from conftest import RecordingExecutor


def test_register_and_resolve_object(registry):
    ex = RecordingExecutor()
    registry.register("SEND_DIGEST", ex)

    assert registry.resolve("SEND_DIGEST") is ex
    assert "SEND_DIGEST" in registry
    assert len(registry) == 1


def test_plain_function_is_wrapped(registry):
    seen = []

    @registry.executor("DEADLINE_REMINDER")
    def remind(payload):
        seen.append(payload)

    executor = registry.resolve("DEADLINE_REMINDER")
    assert isinstance(executor, JobExecutor)
    executor.execute("p")
    assert seen == ["p"]


def test_resolve_unknown_type(registry):
    with pytest.raises(ExecutorNotFoundError) as exc:
        registry.resolve("NOPE")
    assert exc.value.job_type == "NOPE"


def test_duplicate_registration_rejected(registry):
    registry.register("A", RecordingExecutor())
    with pytest.raises(RegistryError):
        registry.register("A", RecordingExecutor())


def test_frozen_registry_is_read_only(registry):
    registry.register("A", RecordingExecutor())
    registry.freeze()

    with pytest.raises(RegistryError):
        registry.register("B", RecordingExecutor())
    assert registry.job_types() == ["A"]


def test_invalid_registrations():
    registry = ExecutorRegistry()
    with pytest.raises(RegistryError):
        registry.register("", RecordingExecutor())
    with pytest.raises(RegistryError):
        registry.register("A", "not an executor")
