"""
RFQ publisher: turns an approved sourcing request into a formal Request for
Quotation and manages its lifecycle.

    DRAFT -> PUBLISHED -> UNDER_EVALUATION -> AWARDED
                       \\-> EXPIRED (deadline elapsed while PUBLISHED)
    DRAFT / PUBLISHED / UNDER_EVALUATION -> CANCELLED

Expiry is lazy: effective_status() reports EXPIRED for a PUBLISHED RFQ past
its effective deadline, and reads persist it. The expire_overdue_rfqs()
sweep does the same eagerly from the worker.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from procura.core.clock import to_naive_utc, utcnow
from procura.core.config import settings
from procura.core.errors import (
    ConflictError, InvalidStateTransition, NotFound, RfqExpired, ValidationError,
)
from procura.core.logging import get_logger
from procura.db.models import (
    Organization, Quote, QuoteStatus, RequestStatus, RFQ, RFQStatus, Supplier,
)
from procura.db.session import unit_of_work
from procura.services.audit import record_audit
from procura.services.numbering import generate_number
from procura.services.profiles import CRITERIA, get_profile
from procura.services.request_intake import RequestIntakeService

logger = get_logger(__name__)

OPEN_RFQ_STATUSES = (RFQStatus.DRAFT, RFQStatus.PUBLISHED, RFQStatus.UNDER_EVALUATION)
OPEN_QUOTE_STATUSES = (QuoteStatus.DRAFT, QuoteStatus.SUBMITTED, QuoteStatus.UNDER_REVIEW)


def effective_status(rfq: RFQ, now: Optional[datetime] = None) -> str:
    """Stored status, except a PUBLISHED RFQ past its deadline reads as EXPIRED."""
    now = now or utcnow()
    if rfq.status == RFQStatus.PUBLISHED.value and rfq.effective_deadline is not None:
        if to_naive_utc(rfq.effective_deadline) <= now:
            return RFQStatus.EXPIRED.value
    return rfq.status


def normalize_weights(weights: Optional[Dict[str, Any]], domain: Optional[str] = None) -> Dict[str, float]:
    """
    Validate criteria weights and scale them to sum to 1.0.

    Unknown criteria are rejected; criteria not named weigh 0.
    """
    if weights is None:
        weights = get_profile(domain).default_weights
    if not weights:
        raise ValidationError("At least one scoring criterion is required", field="criteria_weights")

    unknown = sorted(set(weights) - set(CRITERIA))
    if unknown:
        raise ValidationError(
            f"Unknown scoring criteria: {', '.join(unknown)}",
            field="criteria_weights",
            details={"unknown": unknown, "allowed": list(CRITERIA)},
        )

    for name, value in weights.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"Weight for '{name}' must be a number", field="criteria_weights")
        if value < 0:
            raise ValidationError(f"Weight for '{name}' cannot be negative", field="criteria_weights")

    total = float(sum(weights.values()))
    if total <= 0:
        raise ValidationError("Criteria weights must have a positive sum", field="criteria_weights")

    return {name: float(weights.get(name, 0.0)) / total for name in CRITERIA}


def _required_capabilities(requirements: Optional[dict]) -> List[str]:
    requirements = requirements or {}
    names: List[str] = []
    for key in ("capabilities", "certifications"):
        for item in requirements.get(key) or []:
            if isinstance(item, str) and item.strip() and item.strip() not in names:
                names.append(item.strip())
    return names


def expire_overdue_rfqs(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Persist EXPIRED for every PUBLISHED RFQ past its effective deadline, and
    for open quotes whose validity window has elapsed. Runs across tenants.
    """
    now = now or utcnow()
    with unit_of_work(db):
        overdue = db.query(RFQ).filter(
            RFQ.status == RFQStatus.PUBLISHED.value,
            func.coalesce(RFQ.extended_deadline, RFQ.deadline) <= now,
        ).all()
        for rfq in overdue:
            rfq.status = RFQStatus.EXPIRED.value
            record_audit(
                db, rfq.organization_id, "rfq_expired", "rfq", rfq.id,
                details={"deadline": rfq.effective_deadline.isoformat()},
            )

        expired_quotes = db.query(Quote).filter(
            Quote.status.in_([QuoteStatus.SUBMITTED.value, QuoteStatus.UNDER_REVIEW.value]),
            Quote.valid_until <= now,
        ).update({Quote.status: QuoteStatus.EXPIRED.value}, synchronize_session=False)

    if overdue or expired_quotes:
        logger.info(f"Expiry sweep: {len(overdue)} RFQs, {expired_quotes} quotes expired")
    return {"rfqs_expired": len(overdue), "quotes_expired": expired_quotes}


class RFQPublisher:
    """RFQ lifecycle for one tenant."""

    def __init__(self, db: Session, org_id: int, user_id: Optional[int] = None):
        self.db = db
        self.org_id = org_id
        self.user_id = user_id

    # ============= READS =============

    def _load(self, rfq_id: int) -> RFQ:
        rfq = self.db.query(RFQ).filter(
            RFQ.id == rfq_id,
            RFQ.organization_id == self.org_id,
        ).first()
        if not rfq:
            raise NotFound("RFQ", rfq_id)
        return rfq

    def get_rfq(self, rfq_id: int) -> RFQ:
        """Load an RFQ, persisting EXPIRED if its deadline elapsed while PUBLISHED."""
        rfq = self._load(rfq_id)
        if effective_status(rfq) != rfq.status:
            with unit_of_work(self.db):
                rfq.status = RFQStatus.EXPIRED.value
                record_audit(
                    self.db, self.org_id, "rfq_expired", "rfq", rfq.id,
                    user_id=self.user_id,
                    details={"deadline": rfq.effective_deadline.isoformat()},
                )
            logger.info(f"RFQ {rfq.rfq_number} expired on read")
        return rfq

    def list_rfqs(
        self,
        status: Optional[str] = None,
        request_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> Tuple[List[RFQ], int]:
        """
        Newest first, with the unpaginated total. The status filter matches
        the effective status, so overdue PUBLISHED RFQs list as EXPIRED.
        """
        now = now or utcnow()
        deadline = func.coalesce(RFQ.extended_deadline, RFQ.deadline)
        query = self.db.query(RFQ).filter(RFQ.organization_id == self.org_id)
        if status:
            if status not in {s.value for s in RFQStatus}:
                raise ValidationError(f"Unknown RFQ status '{status}'", field="status")
            if status == RFQStatus.PUBLISHED.value:
                query = query.filter(RFQ.status == status, deadline > now)
            elif status == RFQStatus.EXPIRED.value:
                query = query.filter(or_(
                    RFQ.status == status,
                    and_(RFQ.status == RFQStatus.PUBLISHED.value, deadline <= now),
                ))
            else:
                query = query.filter(RFQ.status == status)
        if request_id is not None:
            query = query.filter(RFQ.request_id == request_id)

        total = query.count()
        rfqs = query.order_by(RFQ.created_at.desc(), RFQ.id.desc()).offset(offset).limit(limit).all()
        return rfqs, total

    def _publish_allowed_from_submitted(self) -> bool:
        if not settings.RFQ_PUBLISH_REQUIRES_APPROVAL:
            return True
        org = self.db.query(Organization).filter(Organization.id == self.org_id).first()
        return bool(org and (org.settings or {}).get("allow_publish_from_submitted"))

    def _validate_suppliers(self, supplier_ids: Iterable[int]) -> List[int]:
        ids = []
        for sid in supplier_ids or []:
            if sid not in ids:
                ids.append(sid)
        if not ids:
            return ids
        found = {
            row.id for row in self.db.query(Supplier.id).filter(
                Supplier.id.in_(ids),
                Supplier.organization_id == self.org_id,
            )
        }
        missing = [sid for sid in ids if sid not in found]
        if missing:
            raise ValidationError(
                f"Unknown suppliers: {', '.join(str(s) for s in missing)}",
                field="target_supplier_ids",
                details={"missing": missing},
            )
        return ids

    # ============= TRANSITIONS =============

    def publish_rfq(
        self,
        request_id: int,
        deadline: datetime,
        criteria_weights: Optional[Dict[str, Any]] = None,
        target_supplier_ids: Optional[List[int]] = None,
        title: Optional[str] = None,
        required_capabilities: Optional[List[str]] = None,
        budget: Optional[float] = None,
        requested_lead_time_days: Optional[float] = None,
        publish: bool = True,
    ) -> RFQ:
        request = RequestIntakeService(self.db, self.org_id, self.user_id).get_request_for_sourcing(request_id)

        if request.archived_at is not None:
            raise InvalidStateTransition("Request", "archived", "publish")
        allowed = {RequestStatus.APPROVED.value}
        if self._publish_allowed_from_submitted():
            allowed |= {RequestStatus.SUBMITTED.value, RequestStatus.UNDER_REVIEW.value}
        if request.status not in allowed:
            raise InvalidStateTransition("Request", request.status, "publish")

        open_rfq = self.db.query(RFQ.id).filter(
            RFQ.request_id == request.id,
            RFQ.status.in_([s.value for s in OPEN_RFQ_STATUSES + (RFQStatus.AWARDED,)]),
        ).first()
        if open_rfq:
            raise ConflictError(
                "Request already has an active RFQ",
                {"request_id": request.id, "rfq_id": open_rfq.id},
            )

        deadline = to_naive_utc(deadline)
        now = utcnow()
        if deadline is None or deadline <= now:
            raise ValidationError("Deadline must be in the future", field="deadline")
        if budget is not None and budget < 0:
            raise ValidationError("Budget cannot be negative", field="budget")
        if requested_lead_time_days is not None and requested_lead_time_days <= 0:
            raise ValidationError("Requested lead time must be positive", field="requested_lead_time_days")

        profile = get_profile(request.domain)
        weights = normalize_weights(criteria_weights, profile.key)
        suppliers = self._validate_suppliers(target_supplier_ids)
        if required_capabilities is None:
            required_capabilities = _required_capabilities(request.requirements)

        with unit_of_work(self.db):
            rfq = RFQ(
                organization_id=self.org_id,
                request_id=request.id,
                rfq_number=generate_number(profile.prefix("rfq")),
                domain=profile.key,
                title=title or request.title or f"{request.category}: {request.request_number}",
                criteria_weights=weights,
                required_capabilities=list(required_capabilities),
                target_supplier_ids=suppliers,
                budget=budget if budget is not None else request.budget,
                currency=request.currency,
                requested_lead_time_days=(
                    requested_lead_time_days if requested_lead_time_days is not None
                    else request.requested_lead_time_days
                ),
                is_urgent=bool(request.is_urgent),
                deadline=deadline,
                status=RFQStatus.PUBLISHED.value if publish else RFQStatus.DRAFT.value,
                published_at=now if publish else None,
                created_by=self.user_id,
                created_at=now,
            )
            self.db.add(rfq)
            self.db.flush()
            record_audit(
                self.db, self.org_id, "rfq_published" if publish else "rfq_drafted", "rfq", rfq.id,
                user_id=self.user_id,
                details={
                    "rfq_number": rfq.rfq_number,
                    "request_id": request.id,
                    "criteria_weights": weights,
                    "target_supplier_ids": suppliers,
                    "deadline": deadline.isoformat(),
                },
            )

        logger.info(f"RFQ {rfq.rfq_number} created for request {request.request_number} ({rfq.status})")
        return rfq

    def publish_draft(self, rfq_id: int) -> RFQ:
        rfq = self.get_rfq(rfq_id)
        if rfq.status != RFQStatus.DRAFT.value:
            raise InvalidStateTransition("RFQ", rfq.status, "publish")
        now = utcnow()
        if rfq.effective_deadline <= now:
            raise ValidationError("Deadline must be in the future", field="deadline")

        with unit_of_work(self.db):
            rfq.status = RFQStatus.PUBLISHED.value
            rfq.published_at = now
            record_audit(
                self.db, self.org_id, "rfq_published", "rfq", rfq.id,
                user_id=self.user_id,
                details={"rfq_number": rfq.rfq_number},
            )
        return rfq

    def extend_deadline(self, rfq_id: int, new_deadline: datetime) -> RFQ:
        rfq = self.get_rfq(rfq_id)
        if rfq.status not in (RFQStatus.PUBLISHED.value, RFQStatus.UNDER_EVALUATION.value):
            raise InvalidStateTransition("RFQ", rfq.status, "extend")

        new_deadline = to_naive_utc(new_deadline)
        current = rfq.effective_deadline
        if new_deadline is None or new_deadline <= current:
            raise ValidationError(
                "New deadline must be later than the current deadline",
                field="deadline",
                details={"current_deadline": current.isoformat()},
            )

        with unit_of_work(self.db):
            rfq.extended_deadline = new_deadline
            record_audit(
                self.db, self.org_id, "rfq_deadline_extended", "rfq", rfq.id,
                user_id=self.user_id,
                details={"from": current.isoformat(), "to": new_deadline.isoformat()},
            )
        return rfq

    def cancel_rfq(self, rfq_id: int, reason: Optional[str] = None) -> RFQ:
        rfq = self.get_rfq(rfq_id)
        if rfq.status not in {s.value for s in OPEN_RFQ_STATUSES}:
            raise InvalidStateTransition("RFQ", rfq.status, "cancel")

        previous = rfq.status
        with unit_of_work(self.db):
            rfq.status = RFQStatus.CANCELLED.value
            rfq.cancelled_at = utcnow()
            rfq.cancel_reason = reason
            rejected = self.db.query(Quote).filter(
                Quote.rfq_id == rfq.id,
                Quote.status.in_([s.value for s in OPEN_QUOTE_STATUSES]),
            ).update({Quote.status: QuoteStatus.REJECTED.value}, synchronize_session="fetch")
            record_audit(
                self.db, self.org_id, "rfq_cancelled", "rfq", rfq.id,
                user_id=self.user_id,
                details={"from": previous, "reason": reason, "quotes_rejected": rejected},
            )

        logger.info(f"RFQ {rfq.rfq_number} cancelled; {rejected} open quotes rejected")
        return rfq

    def close_bidding(self, rfq_id: int) -> RFQ:
        rfq = self.get_rfq(rfq_id)
        if rfq.status == RFQStatus.EXPIRED.value:
            raise RfqExpired(rfq.id)
        if rfq.status != RFQStatus.PUBLISHED.value:
            raise InvalidStateTransition("RFQ", rfq.status, "close bidding on")

        with unit_of_work(self.db):
            rfq.status = RFQStatus.UNDER_EVALUATION.value
            record_audit(
                self.db, self.org_id, "rfq_bidding_closed", "rfq", rfq.id,
                user_id=self.user_id,
            )
        return rfq
