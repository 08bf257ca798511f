"""Error taxonomy for the compile-and-execute pipeline.

Every component converts the failures it cannot recover from into one of
these types, so transport exceptions never leave a component unwrapped.
"""


class QueryCraftError(Exception):
    """Base class for recoverable pipeline failures"""


class UnsupportedBackendError(QueryCraftError):
    """Raised when a backend kind is not recognized"""

    def __init__(self, backend_kind):
        self.backend_kind = backend_kind
        super().__init__(f"Unsupported database type: {backend_kind}")


class CompilationError(QueryCraftError):
    """The completion provider failed while generating a query"""


class ExecutionFailedError(QueryCraftError):
    """A directive could not be executed against its backend"""


class DirectiveMalformedError(ExecutionFailedError):
    """The provider output could not be turned into an executable directive"""

    def __init__(self, message: str, raw_text: str = ""):
        self.raw_text = raw_text
        super().__init__(message)


class ConnectionTestError(QueryCraftError):
    """Connecting to a data source failed"""


class SourceNotFoundError(QueryCraftError):
    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__("Database not found")


class QueryNotFoundError(QueryCraftError):
    def __init__(self, query_id: str):
        self.query_id = query_id
        super().__init__("Query not found")
