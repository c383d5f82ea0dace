"""
Request intake: captures a customer's sourcing need and moves it through
DRAFT -> SUBMITTED -> UNDER_REVIEW -> APPROVED / REJECTED.

Requests are never deleted, only archived.
"""
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from procura.core.clock import to_naive_utc, utcnow
from procura.core.errors import InvalidStateTransition, NotFound, ValidationError
from procura.core.logging import get_logger
from procura.db.models import Customer, RequestPriority, RequestStatus, SourcingRequest
from procura.db.session import unit_of_work
from procura.services.audit import record_audit
from procura.services.numbering import generate_number
from procura.services.profiles import get_profile

logger = get_logger(__name__)

REQUEST_FIELDS = (
    "category", "title", "description", "origin", "destination", "service_type",
    "requirements", "budget", "currency", "deadline", "requested_lead_time_days",
    "is_urgent", "priority",
)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_request_payload(payload: Dict[str, Any], domain: Optional[str] = None) -> None:
    """Reject a request payload before anything is written."""
    profile = get_profile(domain)

    missing = [f for f in profile.required_request_fields if _is_blank(payload.get(f))]
    if missing:
        raise ValidationError(
            f"Missing required fields for {profile.label}: {', '.join(missing)}",
            field=missing[0],
            details={"missing": missing},
        )

    budget = payload.get("budget")
    if budget is not None and budget < 0:
        raise ValidationError("Budget cannot be negative", field="budget")

    lead_time = payload.get("requested_lead_time_days")
    if lead_time is not None and lead_time <= 0:
        raise ValidationError("Requested lead time must be positive", field="requested_lead_time_days")

    priority = payload.get("priority")
    if priority is not None and priority not in {p.value for p in RequestPriority}:
        raise ValidationError(f"Unknown priority '{priority}'", field="priority")

    requirements = payload.get("requirements")
    if requirements is not None and not isinstance(requirements, dict):
        raise ValidationError("Requirements must be an object", field="requirements")


class RequestIntakeService:
    """Sourcing request lifecycle for one tenant."""

    def __init__(self, db: Session, org_id: int, user_id: Optional[int] = None):
        self.db = db
        self.org_id = org_id
        self.user_id = user_id

    def get_request(self, request_id: int) -> SourcingRequest:
        request = self.db.query(SourcingRequest).filter(
            SourcingRequest.id == request_id,
            SourcingRequest.organization_id == self.org_id,
        ).first()
        if not request:
            raise NotFound("Request", request_id)
        return request

    def list_requests(
        self,
        status: Optional[str] = None,
        customer_id: Optional[int] = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[SourcingRequest], int]:
        """Newest first, with the unpaginated total."""
        query = self.db.query(SourcingRequest).filter(SourcingRequest.organization_id == self.org_id)
        if status:
            if status not in {s.value for s in RequestStatus}:
                raise ValidationError(f"Unknown request status '{status}'", field="status")
            query = query.filter(SourcingRequest.status == status)
        if customer_id is not None:
            query = query.filter(SourcingRequest.customer_id == customer_id)
        if not include_archived:
            query = query.filter(SourcingRequest.archived_at.is_(None))

        total = query.count()
        requests = query.order_by(
            SourcingRequest.created_at.desc(), SourcingRequest.id.desc()
        ).offset(offset).limit(limit).all()
        return requests, total

    def get_request_for_sourcing(self, request_id: int) -> SourcingRequest:
        """Requests are visible to the rest of the workflow only once submitted."""
        request = self.get_request(request_id)
        if request.status == RequestStatus.DRAFT.value:
            raise InvalidStateTransition("Request", request.status, "source")
        return request

    def create_request(self, customer_id: int, payload: Dict[str, Any]) -> SourcingRequest:
        domain = payload.get("domain")
        profile = get_profile(domain)
        validate_request_payload(payload, profile.key)

        customer = self.db.query(Customer).filter(
            Customer.id == customer_id,
            Customer.organization_id == self.org_id,
        ).first()
        if not customer:
            raise NotFound("Customer", customer_id)

        values = {f: payload.get(f) for f in REQUEST_FIELDS if payload.get(f) is not None}
        if "deadline" in values:
            values["deadline"] = to_naive_utc(values["deadline"])
        values.setdefault("requirements", {})
        values.setdefault("priority", RequestPriority.NORMAL.value)
        if values.get("is_urgent") is None:
            values["is_urgent"] = values["priority"] == RequestPriority.URGENT.value

        with unit_of_work(self.db):
            request = SourcingRequest(
                organization_id=self.org_id,
                customer_id=customer.id,
                request_number=generate_number(profile.prefix("request")),
                domain=profile.key,
                status=RequestStatus.DRAFT.value,
                created_by=self.user_id,
                created_at=utcnow(),
                **values,
            )
            self.db.add(request)
            self.db.flush()
            record_audit(
                self.db, self.org_id, "request_created", "sourcing_request", request.id,
                user_id=self.user_id,
                details={"request_number": request.request_number, "domain": profile.key},
            )

        logger.info(f"Created request {request.request_number} for customer {customer.id}")
        return request

    def _transition(
        self,
        request_id: int,
        allowed: tuple,
        target: RequestStatus,
        operation: str,
        notes: Optional[str] = None,
    ) -> SourcingRequest:
        request = self.get_request(request_id)
        if request.archived_at is not None:
            raise InvalidStateTransition("Request", "archived", operation)
        if request.status not in {s.value for s in allowed}:
            raise InvalidStateTransition("Request", request.status, operation)

        previous = request.status
        now = utcnow()
        with unit_of_work(self.db):
            request.status = target.value
            if target == RequestStatus.SUBMITTED:
                request.submitted_at = now
            if target in (RequestStatus.APPROVED, RequestStatus.REJECTED):
                request.reviewed_at = now
                request.reviewed_by = self.user_id
            if notes is not None:
                request.review_notes = notes
            record_audit(
                self.db, self.org_id, f"request_{operation}", "sourcing_request", request.id,
                user_id=self.user_id,
                details={"from": previous, "to": target.value},
            )
        return request

    def submit_request(self, request_id: int) -> SourcingRequest:
        return self._transition(request_id, (RequestStatus.DRAFT,), RequestStatus.SUBMITTED, "submit")

    def start_review(self, request_id: int) -> SourcingRequest:
        return self._transition(
            request_id, (RequestStatus.SUBMITTED,), RequestStatus.UNDER_REVIEW, "review"
        )

    def approve_request(self, request_id: int, notes: Optional[str] = None) -> SourcingRequest:
        return self._transition(
            request_id,
            (RequestStatus.SUBMITTED, RequestStatus.UNDER_REVIEW),
            RequestStatus.APPROVED,
            "approve",
            notes=notes,
        )

    def reject_request(self, request_id: int, reason: str) -> SourcingRequest:
        if _is_blank(reason):
            raise ValidationError("A rejection reason is required", field="reason")
        return self._transition(
            request_id,
            (RequestStatus.SUBMITTED, RequestStatus.UNDER_REVIEW),
            RequestStatus.REJECTED,
            "reject",
            notes=reason,
        )

    def archive_request(self, request_id: int) -> SourcingRequest:
        request = self.get_request(request_id)
        if request.archived_at is not None:
            return request

        with unit_of_work(self.db):
            request.archived_at = utcnow()
            record_audit(
                self.db, self.org_id, "request_archived", "sourcing_request", request.id,
                user_id=self.user_id,
                details={"status": request.status},
            )
        return request
