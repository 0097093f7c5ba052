"""
Typed failures raised by the quote engine.

Every error carries a machine-readable ``code`` and the HTTP status the API layer
answers with. Routes never catch these individually; the handler registered in
main.py turns them into ``{"error": code, "detail": message}`` responses.
"""
from typing import Optional


class QuoteEngineError(Exception):
    """Base class for all quote engine failures."""
    code = "QUOTE_ENGINE_ERROR"
    http_status = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidInput(QuoteEngineError):
    """Contradictory or missing geometry, non-positive numeric fields. Raised before any I/O."""
    code = "INVALID_INPUT"
    http_status = 422


class NotFound(QuoteEngineError):
    """No effective price for a material, unknown material, or no current revision."""
    code = "NOT_FOUND"
    http_status = 404


class Forbidden(QuoteEngineError):
    """Caller role may not perform the operation."""
    code = "FORBIDDEN"
    http_status = 403


class PersistenceConflict(QuoteEngineError):
    """
    A write lost a uniqueness race.

    Raised when quote-number generation exhausts its attempts, or when a
    recompute finds the current-revision pointer already moved by another
    in-flight recompute.
    """
    code = "PERSISTENCE_CONFLICT"
    http_status = 409


class PartialRevisionFailure(QuoteEngineError):
    """
    The current revision was demoted but the replacement revision could not be inserted.

    ``rolled_back`` tells whether the demote was undone by the transaction
    rollback. When it is False the quote may have no current revision and
    ``reconcile_current_revisions`` must be run.
    """
    code = "PARTIAL_REVISION_FAILURE"
    http_status = 500

    def __init__(
        self,
        quote_id: str,
        previous_revision: int,
        cause: Optional[BaseException] = None,
        rolled_back: bool = True,
    ):
        self.quote_id = quote_id
        self.previous_revision = previous_revision
        self.rolled_back = rolled_back
        self.cause = cause
        super().__init__(
            f"Revision {previous_revision + 1} of quote {quote_id} could not be inserted "
            f"after demoting revision {previous_revision}"
            + ("" if rolled_back else "; quote left without a current revision")
            + (f": {cause}" if cause else "")
        )
