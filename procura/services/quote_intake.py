"""
Quote intake: accepts competing supplier quotes against a published RFQ.

One active (non-withdrawn) quote per supplier per RFQ, enforced by a check
here and by the partial unique index on quotes.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from procura.core.clock import to_naive_utc, utcnow
from procura.core.errors import (
    DuplicateQuote, InvalidStateTransition, NotFound, QuoteExpired,
    RfqNotAcceptingQuotes, ValidationError,
)
from procura.core.logging import get_logger
from procura.db.models import Quote, QuoteStatus, RFQStatus, Supplier
from procura.db.session import unit_of_work
from procura.services.audit import record_audit
from procura.services.numbering import generate_number
from procura.services.profiles import get_profile
from procura.services.rfq_publisher import RFQPublisher

logger = get_logger(__name__)

WITHDRAWABLE_STATUSES = (QuoteStatus.SUBMITTED.value, QuoteStatus.UNDER_REVIEW.value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_additional_costs(items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    costs = []
    for i, item in enumerate(items or []):
        if not isinstance(item, dict):
            raise ValidationError("Additional costs must be {label, amount} items", field="additional_costs")
        amount = item.get("amount")
        if not _is_number(amount):
            raise ValidationError(f"Additional cost #{i + 1} needs a numeric amount", field="additional_costs")
        if amount < 0:
            raise ValidationError("Additional costs cannot be negative", field="additional_costs")
        costs.append({"label": str(item.get("label") or f"Item {i + 1}"), "amount": float(amount)})
    return costs


def compute_total(base_price: float, additional_costs: List[Dict[str, Any]]) -> float:
    """Total = base + itemized additions, rounded to cents."""
    return round(float(base_price) + sum(c["amount"] for c in additional_costs), 2)


def expire_elapsed_quotes(db: Session, rfq_id: int, now: Optional[datetime] = None) -> List[int]:
    """Mark open quotes of an RFQ whose validity window has elapsed as EXPIRED."""
    now = now or utcnow()
    elapsed = db.query(Quote).filter(
        Quote.rfq_id == rfq_id,
        Quote.status.in_(WITHDRAWABLE_STATUSES),
        Quote.valid_until <= now,
    ).all()
    for quote in elapsed:
        quote.status = QuoteStatus.EXPIRED.value
    return [q.id for q in elapsed]


class QuoteIntakeService:
    """Quote submission and withdrawal for one tenant."""

    def __init__(self, db: Session, org_id: int, user_id: Optional[int] = None):
        self.db = db
        self.org_id = org_id
        self.user_id = user_id

    def get_quote(self, quote_id: int) -> Quote:
        quote = self.db.query(Quote).filter(
            Quote.id == quote_id,
            Quote.organization_id == self.org_id,
        ).first()
        if not quote:
            raise NotFound("Quote", quote_id)
        return quote

    def list_quotes(
        self,
        status: Optional[str] = None,
        rfq_id: Optional[int] = None,
        supplier_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Quote], int]:
        """Ranked quotes first within an RFQ, newest submissions otherwise."""
        query = self.db.query(Quote).filter(Quote.organization_id == self.org_id)
        if status:
            if status not in {s.value for s in QuoteStatus}:
                raise ValidationError(f"Unknown quote status '{status}'", field="status")
            query = query.filter(Quote.status == status)
        if rfq_id is not None:
            query = query.filter(Quote.rfq_id == rfq_id)
        if supplier_id is not None:
            query = query.filter(Quote.supplier_id == supplier_id)

        total = query.count()
        if rfq_id is not None:
            query = query.order_by(Quote.rank.is_(None), Quote.rank, Quote.id)
        else:
            query = query.order_by(Quote.submitted_at.desc(), Quote.id.desc())
        return query.offset(offset).limit(limit).all(), total

    def submit_quote(
        self,
        rfq_id: int,
        supplier_id: int,
        base_price: Optional[float],
        lead_time_days: Optional[float],
        valid_until: Optional[datetime],
        additional_costs: Optional[List[Dict[str, Any]]] = None,
        currency: Optional[str] = None,
        delivery_terms: Optional[str] = None,
        payment_terms: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Quote:
        rfq = RFQPublisher(self.db, self.org_id, self.user_id).get_rfq(rfq_id)
        if rfq.status != RFQStatus.PUBLISHED.value:
            raise RfqNotAcceptingQuotes(rfq.id, rfq.status)

        supplier = self.db.query(Supplier).filter(
            Supplier.id == supplier_id,
            Supplier.organization_id == self.org_id,
        ).first()
        if not supplier:
            raise NotFound("Supplier", supplier_id)
        if rfq.target_supplier_ids and supplier.id not in rfq.target_supplier_ids:
            raise ValidationError("Supplier was not invited to this RFQ", field="supplier_id")

        # Structural completeness
        if base_price is None:
            raise ValidationError("Base price is required", field="base_price")
        if not _is_number(base_price) or base_price < 0:
            raise ValidationError("Base price must be a non-negative number", field="base_price")
        if lead_time_days is None or not _is_number(lead_time_days) or lead_time_days <= 0:
            raise ValidationError("Lead time must be a positive number of days", field="lead_time_days")
        if valid_until is None:
            raise ValidationError("valid_until is required", field="valid_until")
        costs = normalize_additional_costs(additional_costs)

        now = utcnow()
        valid_until = to_naive_utc(valid_until)
        if valid_until <= now:
            raise QuoteExpired()

        active = self.db.query(Quote.id).filter(
            Quote.rfq_id == rfq.id,
            Quote.supplier_id == supplier.id,
            Quote.status != QuoteStatus.WITHDRAWN.value,
        ).first()
        if active:
            raise DuplicateQuote(rfq.id, supplier.id)

        profile = get_profile(rfq.domain)
        try:
            with unit_of_work(self.db):
                quote = Quote(
                    organization_id=self.org_id,
                    rfq_id=rfq.id,
                    supplier_id=supplier.id,
                    quote_number=generate_number(profile.prefix("quote")),
                    base_price=float(base_price),
                    additional_costs=costs,
                    total_price=compute_total(base_price, costs),
                    currency=currency or rfq.currency,
                    valid_until=valid_until,
                    lead_time_days=float(lead_time_days),
                    delivery_terms=delivery_terms,
                    payment_terms=payment_terms,
                    notes=notes,
                    status=QuoteStatus.SUBMITTED.value,
                    submitted_at=now,
                    created_at=now,
                )
                self.db.add(quote)
                self.db.flush()
                record_audit(
                    self.db, self.org_id, "quote_submitted", "quote", quote.id,
                    user_id=self.user_id,
                    details={
                        "quote_number": quote.quote_number,
                        "rfq_id": rfq.id,
                        "supplier_id": supplier.id,
                        "total_price": quote.total_price,
                    },
                )
        except IntegrityError:
            # Lost a race with a concurrent submission from the same supplier
            raise DuplicateQuote(rfq.id, supplier.id)

        logger.info(f"Quote {quote.quote_number} submitted on RFQ {rfq.rfq_number}: {quote.total_price}")
        return quote

    def withdraw_quote(self, quote_id: int) -> Quote:
        quote = self.get_quote(quote_id)
        if quote.rfq.status == RFQStatus.AWARDED.value:
            raise InvalidStateTransition("RFQ", quote.rfq.status, "withdraw a quote from")
        if quote.status not in WITHDRAWABLE_STATUSES:
            raise InvalidStateTransition("Quote", quote.status, "withdraw")

        previous = quote.status
        with unit_of_work(self.db):
            quote.status = QuoteStatus.WITHDRAWN.value
            quote.withdrawn_at = utcnow()
            quote.rank = None
            record_audit(
                self.db, self.org_id, "quote_withdrawn", "quote", quote.id,
                user_id=self.user_id,
                details={"from": previous, "rfq_id": quote.rfq_id},
            )
        return quote
