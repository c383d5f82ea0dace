"""
Typed error hierarchy for the sourcing workflow.

Every error carries a machine-readable ``code`` and the HTTP status it maps
to, so route handlers never parse messages:

    ProcuraError
    +-- ValidationError              400  malformed / missing input
    +-- NotFound                     404  entity absent or outside the tenant
    +-- ConflictError                409
    |   +-- InvalidStateTransition        wrong status for the operation
    |   +-- AlreadyAwarded                RFQ already has a winner
    |   +-- RfqExpired                    RFQ deadline elapsed
    |   +-- RfqNotAcceptingQuotes         RFQ closed for bidding
    |   +-- DuplicateQuote                supplier already has an active quote
    |   +-- QuoteExpired                  quote validity window elapsed
    |   +-- ImmutableQuoteError           price change on a winning quote
    +-- ExternalServiceUnavailable   503  advisory enrichment only, never surfaced on scoring
    +-- UnexpectedError              500  storage / transport failure

Domain errors are raised before any mutation, or inside a unit of work that
rolls back, so callers see either full success or no effect.
"""
from typing import Any, Dict, Optional


class ProcuraError(Exception):
    """Base class for all workflow errors."""

    code = "PROCURA_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(ProcuraError):
    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class NotFound(ProcuraError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"{entity_type} not found",
            {"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(ProcuraError):
    code = "CONFLICT"
    http_status = 409


class InvalidStateTransition(ConflictError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity_type: str, current: str, operation: str):
        super().__init__(
            f"Cannot {operation} {entity_type} in status '{current}'",
            {"entity_type": entity_type, "current_status": current, "operation": operation},
        )
        self.current = current
        self.operation = operation


class AlreadyAwarded(ConflictError):
    code = "ALREADY_AWARDED"

    def __init__(self, rfq_id: Any):
        super().__init__("RFQ has already been awarded", {"rfq_id": rfq_id})


class RfqExpired(ConflictError):
    code = "RFQ_EXPIRED"

    def __init__(self, rfq_id: Any):
        super().__init__("RFQ deadline has passed", {"rfq_id": rfq_id})


class RfqNotAcceptingQuotes(ConflictError):
    code = "RFQ_NOT_ACCEPTING_QUOTES"

    def __init__(self, rfq_id: Any, status: str):
        super().__init__(
            f"RFQ is not accepting quotes (status '{status}')",
            {"rfq_id": rfq_id, "status": status},
        )


class DuplicateQuote(ConflictError):
    code = "DUPLICATE_QUOTE"

    def __init__(self, rfq_id: Any, supplier_id: Any):
        super().__init__(
            "Supplier already has an active quote for this RFQ",
            {"rfq_id": rfq_id, "supplier_id": supplier_id},
        )


class QuoteExpired(ConflictError):
    code = "QUOTE_EXPIRED"

    def __init__(self, quote_id: Any = None):
        super().__init__("Quote validity window has elapsed", {"quote_id": quote_id})


class ImmutableQuoteError(ConflictError):
    code = "IMMUTABLE_QUOTE"

    def __init__(self, quote_id: Any, fields):
        super().__init__(
            "Price fields of an awarded quote cannot change",
            {"quote_id": quote_id, "fields": sorted(fields)},
        )


class ExternalServiceUnavailable(ProcuraError):
    code = "EXTERNAL_SERVICE_UNAVAILABLE"
    http_status = 503


class UnexpectedError(ProcuraError):
    code = "UNEXPECTED_ERROR"
    http_status = 500
