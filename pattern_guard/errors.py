"""
Error taxonomy for the indexing / pattern pipeline.

Only ``StoreUnavailableError`` is fatal (raised at startup when persistent
storage cannot be opened).  Everything else is isolated per file or per
query by the component that catches it.
"""


class PatternGuardError(Exception):
    """Base class for all pattern_guard errors."""


class ParseFailure(PatternGuardError):
    """A chunker could not parse a file; callers degrade to a whole-file chunk."""


class EmbeddingFailure(PatternGuardError):
    """The external embedder failed or timed out."""


class StoreFailure(PatternGuardError):
    """A write or read against the persistent store failed."""


class StoreUnavailableError(StoreFailure):
    """Persistent storage is entirely unreachable (blocks readiness)."""


class QueryTimeout(PatternGuardError):
    """An enforcement query exceeded its time budget."""
