"""
Award & order transition.

Awarding is linearized per RFQ by a single conditional UPDATE: the row only
moves to AWARDED when it is still open and has no winner. Everything else
(winning quote, rejected siblings, order, supplier and customer statistics,
audit row) commits in the same unit of work or not at all.
"""
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from procura.core.clock import to_naive_utc, utcnow
from procura.core.errors import (
    AlreadyAwarded, InvalidStateTransition, NotFound, QuoteExpired, RfqExpired,
)
from procura.core.logging import get_logger
from procura.db.models import (
    Customer, Order, OrderStatus, Quote, QuoteStatus, RFQ, RFQStatus, Supplier,
)
from procura.db.session import unit_of_work
from procura.services.audit import record_audit
from procura.services.numbering import generate_number
from procura.services.profiles import get_profile
from procura.services.rfq_publisher import RFQPublisher

logger = get_logger(__name__)

AWARDABLE_RFQ_STATUSES = (RFQStatus.PUBLISHED.value, RFQStatus.UNDER_EVALUATION.value)
AWARDABLE_QUOTE_STATUSES = (QuoteStatus.SUBMITTED.value, QuoteStatus.UNDER_REVIEW.value)
# Siblings in these statuses keep them when another quote wins
TERMINAL_SIBLING_STATUSES = (QuoteStatus.WITHDRAWN.value, QuoteStatus.EXPIRED.value)


class AwardService:
    """Selects the winning quote of an RFQ and opens the order."""

    def __init__(self, db: Session, org_id: int, user_id: Optional[int] = None):
        self.db = db
        self.org_id = org_id
        self.user_id = user_id

    def _claim_rfq(self, rfq: RFQ, quote: Quote, now) -> None:
        """Conditional UPDATE that only one concurrent award can win."""
        open_for_award = or_(
            and_(
                RFQ.status == RFQStatus.PUBLISHED.value,
                func.coalesce(RFQ.extended_deadline, RFQ.deadline) > now,
            ),
            RFQ.status == RFQStatus.UNDER_EVALUATION.value,
        )
        result = self.db.execute(
            update(RFQ)
            .where(RFQ.id == rfq.id, RFQ.winning_quote_id.is_(None), open_for_award)
            .values(
                status=RFQStatus.AWARDED.value,
                winning_quote_id=quote.id,
                awarded_at=now,
                awarded_by=self.user_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        current = self.db.execute(
            select(RFQ.status, RFQ.winning_quote_id, RFQ.deadline, RFQ.extended_deadline)
            .where(RFQ.id == rfq.id)
        ).one()
        if current.status == RFQStatus.AWARDED.value or current.winning_quote_id is not None:
            raise AlreadyAwarded(rfq.id)
        deadline = to_naive_utc(current.extended_deadline or current.deadline)
        if current.status == RFQStatus.EXPIRED.value or (
            current.status == RFQStatus.PUBLISHED.value and deadline <= now
        ):
            raise RfqExpired(rfq.id)
        raise InvalidStateTransition("RFQ", current.status, "award")

    def _update_supplier_stats(self, rfq: RFQ, winner: Quote, now) -> Dict[int, float]:
        participants = self.db.query(Quote).filter(
            Quote.rfq_id == rfq.id,
            Quote.status.notin_([QuoteStatus.DRAFT.value, QuoteStatus.WITHDRAWN.value]),
        ).all()

        response_hours = {}
        for quote in participants:
            published = rfq.published_at or rfq.created_at
            hours = 0.0
            if published and quote.submitted_at:
                hours = max(0.0, (quote.submitted_at - published).total_seconds() / 3600.0)
            response_hours[quote.supplier_id] = round(hours, 2)

        for supplier_id, hours in response_hours.items():
            won = 1 if supplier_id == winner.supplier_id else 0
            values = {
                "total_quotes": Supplier.total_quotes + 1,
                "won_quotes": Supplier.won_quotes + won,
                "win_rate": (Supplier.won_quotes + won) * 100.0 / (Supplier.total_quotes + 1),
                "avg_response_hours": (
                    Supplier.avg_response_hours * Supplier.total_quotes + hours
                ) / (Supplier.total_quotes + 1),
                "last_activity_at": now,
            }
            if won:
                values["total_orders"] = Supplier.total_orders + 1
                values["total_revenue"] = Supplier.total_revenue + winner.total_price
            self.db.execute(
                update(Supplier)
                .where(Supplier.id == supplier_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        return response_hours

    def award_quote(self, rfq_id: int, quote_id: int) -> Order:
        rfq = RFQPublisher(self.db, self.org_id, self.user_id).get_rfq(rfq_id)
        if rfq.status == RFQStatus.EXPIRED.value:
            raise RfqExpired(rfq.id)
        if rfq.status == RFQStatus.AWARDED.value:
            raise AlreadyAwarded(rfq.id)
        if rfq.status not in AWARDABLE_RFQ_STATUSES:
            raise InvalidStateTransition("RFQ", rfq.status, "award")

        quote = self.db.query(Quote).filter(
            Quote.id == quote_id,
            Quote.rfq_id == rfq.id,
            Quote.organization_id == self.org_id,
        ).first()
        if not quote:
            raise NotFound("Quote", quote_id)
        if quote.status not in AWARDABLE_QUOTE_STATUSES:
            raise InvalidStateTransition("Quote", quote.status, "award")

        now = utcnow()
        if to_naive_utc(quote.valid_until) <= now:
            with unit_of_work(self.db):
                quote.status = QuoteStatus.EXPIRED.value
            raise QuoteExpired(quote.id)

        profile = get_profile(rfq.domain)
        customer_id = rfq.request.customer_id
        try:
            with unit_of_work(self.db):
                self._claim_rfq(rfq, quote, now)

                quote.is_winning = True
                quote.status = QuoteStatus.SELECTED.value
                self.db.query(Quote).filter(
                    Quote.rfq_id == rfq.id,
                    Quote.id != quote.id,
                    Quote.status.notin_(TERMINAL_SIBLING_STATUSES),
                ).update({Quote.status: QuoteStatus.REJECTED.value}, synchronize_session="fetch")

                order = Order(
                    organization_id=self.org_id,
                    order_number=generate_number(profile.prefix("order")),
                    domain=profile.key,
                    request_id=rfq.request_id,
                    rfq_id=rfq.id,
                    quote_id=quote.id,
                    customer_id=customer_id,
                    supplier_id=quote.supplier_id,
                    agreed_price=quote.total_price,
                    currency=quote.currency,
                    status=OrderStatus.PENDING.value,
                    promised_delivery_at=now + timedelta(days=quote.lead_time_days),
                    created_at=now,
                )
                self.db.add(order)
                self.db.flush()

                response_hours = self._update_supplier_stats(rfq, quote, now)
                self.db.execute(
                    update(Customer)
                    .where(Customer.id == customer_id)
                    .values(
                        total_orders=Customer.total_orders + 1,
                        total_spend=Customer.total_spend + quote.total_price,
                        last_activity_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )

                record_audit(
                    self.db, self.org_id, "rfq_awarded", "rfq", rfq.id,
                    user_id=self.user_id,
                    details={
                        "quote_id": quote.id,
                        "order_id": order.id,
                        "order_number": order.order_number,
                        "supplier_id": quote.supplier_id,
                        "agreed_price": quote.total_price,
                        "participants": sorted(response_hours),
                    },
                )
        except IntegrityError:
            # Unique winner / one-order-per-RFQ constraint: another award got there first
            raise AlreadyAwarded(rfq.id)

        self.db.refresh(rfq)
        for entity in (quote.supplier, rfq.request.customer):
            self.db.refresh(entity)

        logger.info(
            f"RFQ {rfq.rfq_number} awarded to quote {quote.quote_number}; "
            f"order {order.order_number} at {order.agreed_price}"
        )
        return order

    def get_order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(
            Order.id == order_id,
            Order.organization_id == self.org_id,
        ).first()
        if not order:
            raise NotFound("Order", order_id)
        return order
