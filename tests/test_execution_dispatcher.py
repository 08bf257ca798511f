import pytest

from querycraft.models.models import DataSourceRecord, ExecutionState
from querycraft.services.execution_dispatcher import ExecutionAttempt


def test_document_directive_completes(dispatcher, document_source):
    outcome = dispatcher.execute(
        document_source, '// Collection: orders\n// Operation: find\n{"status": "pending"}'
    )

    assert outcome.state == ExecutionState.COMPLETED
    assert outcome.succeeded
    assert outcome.result.row_count == 1
    assert outcome.result.rows[0]["customer"]["name"] == "Grace"
    assert outcome.result.execution_time_ms >= 0


def test_relational_directive_completes(dispatcher, sqlite_source):
    outcome = dispatcher.execute(sqlite_source, "```sql\nSELECT COUNT(*) AS total FROM users\n```")

    assert outcome.succeeded
    assert outcome.result.rows == [{"total": 3}]


@pytest.mark.parametrize("text, message", [
    ('// Operation: find\n{}', "Collection name not specified in the query"),
    ('// Collection: orders\n{}', "Operation type not specified in the query"),
    ('// Collection: orders\n// Operation: update\n{}', "Unsupported operation type: update"),
    ('// Collection: orders\n// Operation: find\n{status: 1}', "Invalid query JSON"),
    ('// Collection: orders\n// Operation: aggregate\n{"status": 1}', "must be a JSON array"),
])
def test_unexecutable_document_directive_fails(dispatcher, document_source, mongo_factory, text, message):
    outcome = dispatcher.execute(document_source, text)

    assert outcome.state == ExecutionState.FAILED
    assert outcome.error.startswith("Failed to execute MongoDB query")
    assert message in outcome.error
    assert mongo_factory.opened == []


def test_engine_rejection_fails(dispatcher, sqlite_source):
    outcome = dispatcher.execute(sqlite_source, "SELECT * FROM missing_table")

    assert outcome.state == ExecutionState.FAILED
    assert outcome.error.startswith("Failed to execute SQL query")
    assert "missing_table" in outcome.error
    assert outcome.result is None


def test_empty_statement_fails(dispatcher, sqlite_source):
    outcome = dispatcher.execute(sqlite_source, "```sql\n```")
    assert outcome.state == ExecutionState.FAILED


def test_unsupported_backend_fails(dispatcher):
    source = DataSourceRecord(owner_id="user-1", name="Wide", type="cassandra")

    outcome = dispatcher.execute(source, "SELECT 1")

    assert outcome.state == ExecutionState.FAILED
    assert "Unsupported database type: cassandra" in outcome.error


def test_attempt_transitions():
    attempt = ExecutionAttempt()
    assert attempt.state == ExecutionState.PENDING

    attempt.start()
    outcome = attempt.fail("boom")

    assert outcome.state == ExecutionState.FAILED
    with pytest.raises(RuntimeError):
        attempt.start()


def test_attempt_cannot_fail_before_running():
    """Every attempt passes through Running, even one rejected before execution"""
    attempt = ExecutionAttempt()

    with pytest.raises(RuntimeError, match="pending -> failed"):
        attempt.fail("boom")
