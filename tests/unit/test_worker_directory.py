import pytest

from agentcoord.errors import AgentError
from agentcoord.workers import EXECUTE, RESTART, RETRY, WorkerDirectory


def test_unregistered_types_accept_every_command():
    directory = WorkerDirectory()
    assert directory.command_key("writer", EXECUTE) == "writer.execute-task"
    assert directory.command_key("writer-1", RETRY, worker_type="writer") == "writer-1.retry-task"


def test_restricted_type_rejects_unsupported_command():
    directory = WorkerDirectory()
    directory.register("reviewer", [EXECUTE])
    assert directory.supports("reviewer", EXECUTE)
    assert not directory.supports("reviewer", RESTART)
    with pytest.raises(AgentError) as excinfo:
        directory.command_key("reviewer-1", RESTART, worker_type="reviewer")
    assert excinfo.value.code == "CAPABILITY_UNSUPPORTED"


def test_strict_directory_rejects_unknown_types():
    directory = WorkerDirectory(strict=True)
    assert directory.capabilities("ghost") == frozenset()
    directory.register("writer")
    assert directory.known_types() == ["writer"]
    assert directory.supports("writer", RESTART)


def test_unknown_capability_is_rejected():
    with pytest.raises(AgentError):
        WorkerDirectory().register("writer", ["teleport"])
