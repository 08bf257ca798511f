"""
Execution dispatcher: routes a directive to the adapter for its backend.

Each call walks one attempt through Pending -> Running -> Completed|Failed. A
directive rejected before it reaches a driver still fails out of Running.
Failures of any kind come back as a Failed outcome carrying a message. Nothing is
retried here; a rerun is simply a new call.
"""

import logging
from typing import Optional

from querycraft.core.config import EngineSettings, get_settings
from querycraft.core.exceptions import UnsupportedBackendError
from querycraft.models.models import (
    BackendKind,
    DataSourceRecord,
    ExecutionOutcome,
    ExecutionResult,
    ExecutionState,
)
from querycraft.services.directive_parser import parse_document_directive, parse_relational_directive
from querycraft.services.document_adapter import MongoDocumentAdapter
from querycraft.services.relational_adapter import SqlRelationalAdapter
from querycraft.utils.performance import PerformanceTracker

# Configure logging
logger = logging.getLogger(__name__)


class ExecutionAttempt:
    """Lifecycle of a single directive execution"""

    TRANSITIONS = {
        ExecutionState.PENDING: {ExecutionState.RUNNING},
        ExecutionState.RUNNING: {ExecutionState.COMPLETED, ExecutionState.FAILED},
        ExecutionState.COMPLETED: set(),
        ExecutionState.FAILED: set(),
    }

    def __init__(self):
        self.state = ExecutionState.PENDING

    def _move(self, target: ExecutionState):
        if target not in self.TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid execution transition {self.state.value} -> {target.value}")
        self.state = target

    def start(self):
        self._move(ExecutionState.RUNNING)

    def complete(self, result: ExecutionResult) -> ExecutionOutcome:
        self._move(ExecutionState.COMPLETED)
        return ExecutionOutcome(state=self.state, result=result)

    def fail(self, message: str) -> ExecutionOutcome:
        self._move(ExecutionState.FAILED)
        return ExecutionOutcome(state=self.state, error=message)


class ExecutionDispatcher:
    """Runs directive text against the data source it was generated for"""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        document_adapter: Optional[MongoDocumentAdapter] = None,
        relational_adapter: Optional[SqlRelationalAdapter] = None,
    ):
        self.settings = settings or get_settings()
        self.document_adapter = document_adapter or MongoDocumentAdapter(self.settings)
        self.relational_adapter = relational_adapter or SqlRelationalAdapter(self.settings)

    def execute(self, source: DataSourceRecord, directive_text: str) -> ExecutionOutcome:
        """
        Parse and execute directive text against a data source.

        Args:
            source: The data source record, with connection fields
            directive_text: Query text as produced by the compiler

        Returns:
            ExecutionOutcome: Completed with an ExecutionResult, or Failed with a message
        """
        attempt = ExecutionAttempt()
        attempt.start()

        try:
            kind = source.backend_kind
        except UnsupportedBackendError as e:
            logger.error(f"Failed to execute query: {str(e)}")
            return attempt.fail(f"Failed to execute query: {str(e)}")

        if kind == BackendKind.DOCUMENT:
            directive = parse_document_directive(directive_text)
            problem = directive.problem
            if problem:
                logger.warning(f"Directive is not executable: {problem}")
                return attempt.fail(f"Failed to execute MongoDB query: {problem}")
            run = lambda: self.document_adapter.execute(source, directive)
            engine_label = "MongoDB"
        else:
            directive = parse_relational_directive(directive_text)
            if not directive.statement_text:
                return attempt.fail("Failed to execute SQL query: statement is empty")
            run = lambda: self.relational_adapter.execute(source, directive)
            engine_label = "SQL"

        try:
            with PerformanceTracker(f"execute_{kind.value}") as tracker:
                rows = run()
        except Exception as e:
            logger.error(f"Error executing {engine_label} query: {str(e)}", exc_info=True)
            return attempt.fail(f"Failed to execute {engine_label} query: {str(e)}")

        result = ExecutionResult(rows=rows, row_count=len(rows), execution_time_ms=round(tracker.duration_ms, 2))
        logger.info(f"Query executed successfully, returned {result.row_count} rows", extra={"row_count": result.row_count})
        return attempt.complete(result)
