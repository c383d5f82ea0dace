"""
SQLAlchemy ORM models for Procura OS.
All models are scoped to organization for multi-tenancy.
"""
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Float,
    ForeignKey, Enum, JSON, UniqueConstraint, Index, event, inspect, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from procura.core.clock import utcnow
from procura.core.errors import ImmutableQuoteError
from procura.db.session import Base


# ============= ENUMS =============

class RequestStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class RequestPriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class RFQStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    UNDER_EVALUATION = "under_evaluation"
    AWARDED = "awarded"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class QuoteStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    SELECTED = "selected"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class Recommendation(str, enum.Enum):
    HIGHLY_RECOMMENDED = "HIGHLY_RECOMMENDED"
    RECOMMENDED = "RECOMMENDED"
    ACCEPTABLE = "ACCEPTABLE"
    NOT_RECOMMENDED = "NOT_RECOMMENDED"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class TrackingEventType(str, enum.Enum):
    REGISTERED = "REGISTERED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    EXCEPTION = "EXCEPTION"


# Statuses are stored as their string values (VARCHAR + app-side validation)
# so the same schema works on PostgreSQL and SQLite.
def enum_values(enum_cls):
    return [e.value for e in enum_cls]


RequestStatusType = Enum(*enum_values(RequestStatus), name='requeststatus', native_enum=False, length=32)
RequestPriorityType = Enum(*enum_values(RequestPriority), name='requestpriority', native_enum=False, length=32)
RFQStatusType = Enum(*enum_values(RFQStatus), name='rfqstatus', native_enum=False, length=32)
QuoteStatusType = Enum(*enum_values(QuoteStatus), name='quotestatus', native_enum=False, length=32)
OrderStatusType = Enum(*enum_values(OrderStatus), name='orderstatus', native_enum=False, length=32)
TrackingEventTypeType = Enum(*enum_values(TrackingEventType), name='trackingeventtype', native_enum=False, length=32)


# ============= MULTI-TENANCY =============

class Organization(Base):
    """Organization (tenant)."""
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    settings = Column(JSON, default=dict)  # tenant policy, e.g. allow_publish_from_submitted
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ============= AUDIT LOG =============

class AuditLog(Base):
    """Audit trail for every workflow state change."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    user_id = Column(Integer, nullable=True)  # identity lives in the external identity service
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(100), index=True)
    entity_id = Column(Integer)
    details = Column(JSON)

    __table_args__ = (
        Index('ix_audit_logs_org_timestamp', 'organization_id', 'timestamp'),
    )


# ============= PARTIES =============

class Customer(Base):
    """Customer with running order statistics."""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    company_name = Column(String(255), nullable=False)
    email = Column(String(255))

    # Running statistics (atomic increments only)
    total_orders = Column(Integer, default=0, nullable=False)
    total_spend = Column(Float, default=0.0, nullable=False)
    last_activity_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    requests = relationship("SourcingRequest", back_populates="customer")


class Supplier(Base):
    """Supplier with capabilities and running performance statistics."""
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    company_name = Column(String(255), nullable=False)
    email = Column(String(255))
    capabilities = Column(JSON, default=list)
    certifications = Column(JSON, default=list)
    service_types = Column(JSON, default=list)

    # Running statistics (atomic increments only)
    total_quotes = Column(Integer, default=0, nullable=False)
    won_quotes = Column(Integer, default=0, nullable=False)
    win_rate = Column(Float, default=0.0, nullable=False)
    total_orders = Column(Integer, default=0, nullable=False)
    total_revenue = Column(Float, default=0.0, nullable=False)
    completed_orders = Column(Integer, default=0, nullable=False)
    rated_orders = Column(Integer, default=0, nullable=False)
    dispute_count = Column(Integer, default=0, nullable=False)
    avg_response_hours = Column(Float, default=0.0, nullable=False)

    # 0-100 scales; first observation replaces the default
    reliability_score = Column(Float, default=75.0, nullable=False)
    quality_score = Column(Float, default=75.0, nullable=False)
    performance_score = Column(Float, default=75.0, nullable=False)
    on_time_delivery_rate = Column(Float, default=100.0, nullable=False)
    last_activity_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    quotes = relationship("Quote", back_populates="supplier")


# ============= SOURCING WORKFLOW =============

class SourcingRequest(Base):
    """A customer's sourcing need."""
    __tablename__ = "sourcing_requests"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    request_number = Column(String(64), nullable=False)
    domain = Column(String(50), nullable=False)  # domain profile key
    category = Column(String(100), nullable=False)
    title = Column(String(255))
    description = Column(Text, nullable=False)
    origin = Column(String(255))
    destination = Column(String(255))
    service_type = Column(String(100))
    requirements = Column(JSON, default=dict)
    budget = Column(Float)
    currency = Column(String(10), default="EUR")
    deadline = Column(DateTime(timezone=True))  # requested completion date
    requested_lead_time_days = Column(Float)
    is_urgent = Column(Boolean, default=False, nullable=False)
    priority = Column(RequestPriorityType, default=RequestPriority.NORMAL.value, nullable=False)
    status = Column(RequestStatusType, default=RequestStatus.DRAFT.value, nullable=False, index=True)
    review_notes = Column(Text)
    submitted_at = Column(DateTime(timezone=True))
    reviewed_at = Column(DateTime(timezone=True))
    reviewed_by = Column(Integer)
    archived_at = Column(DateTime(timezone=True))
    created_by = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    customer = relationship("Customer", back_populates="requests")
    rfqs = relationship("RFQ", back_populates="request")

    __table_args__ = (
        UniqueConstraint('organization_id', 'request_number', name='uq_request_org_number'),
    )


class RFQ(Base):
    """Request for Quotation published against one sourcing request."""
    __tablename__ = "rfqs"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    request_id = Column(Integer, ForeignKey("sourcing_requests.id"), nullable=False, index=True)
    rfq_number = Column(String(64), nullable=False)
    domain = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)

    # Snapshots taken at publish time; later profile changes never alter them
    criteria_weights = Column(JSON, nullable=False)
    required_capabilities = Column(JSON, default=list)
    target_supplier_ids = Column(JSON, default=list)

    budget = Column(Float)
    currency = Column(String(10), default="EUR")
    requested_lead_time_days = Column(Float)
    is_urgent = Column(Boolean, default=False, nullable=False)
    deadline = Column(DateTime(timezone=True), nullable=False)
    extended_deadline = Column(DateTime(timezone=True))
    status = Column(RFQStatusType, default=RFQStatus.DRAFT.value, nullable=False, index=True)

    # Set at most once, in the same statement that moves status to AWARDED
    winning_quote_id = Column(Integer, nullable=True, index=True)

    published_at = Column(DateTime(timezone=True))
    awarded_at = Column(DateTime(timezone=True))
    awarded_by = Column(Integer)
    cancelled_at = Column(DateTime(timezone=True))
    cancel_reason = Column(Text)
    created_by = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    request = relationship("SourcingRequest", back_populates="rfqs")
    quotes = relationship("Quote", back_populates="rfq", order_by="Quote.id")

    __table_args__ = (
        UniqueConstraint('organization_id', 'rfq_number', name='uq_rfq_org_number'),
    )

    @property
    def effective_deadline(self):
        return self.extended_deadline or self.deadline


class Quote(Base):
    """A supplier's priced, time-bound proposal against an RFQ."""
    __tablename__ = "quotes"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False, index=True)
    quote_number = Column(String(64), nullable=False)

    # Pricing (total is always computed server-side)
    base_price = Column(Float, nullable=False)
    additional_costs = Column(JSON, default=list)  # [{"label": str, "amount": float}]
    total_price = Column(Float, nullable=False)
    currency = Column(String(10), default="EUR")

    valid_until = Column(DateTime(timezone=True), nullable=False)
    lead_time_days = Column(Float, nullable=False)
    delivery_terms = Column(String(100))
    payment_terms = Column(String(100))
    notes = Column(Text)
    status = Column(QuoteStatusType, default=QuoteStatus.SUBMITTED.value, nullable=False, index=True)
    submitted_at = Column(DateTime(timezone=True), nullable=False)
    withdrawn_at = Column(DateTime(timezone=True))

    # Authoritative deterministic scoring
    score = Column(Float)
    score_breakdown = Column(JSON)
    rank = Column(Integer)
    recommendation = Column(String(32))
    rationale = Column(Text)
    scored_at = Column(DateTime(timezone=True))
    is_winning = Column(Boolean, default=False, nullable=False)

    # Advisory overlay from the reasoning service (never part of `score`)
    advisory_confidence = Column(Float)
    advisory_recommendation = Column(String(32))
    advisory_rationale = Column(Text)
    advisory_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    rfq = relationship("RFQ", back_populates="quotes")
    supplier = relationship("Supplier", back_populates="quotes")

    __table_args__ = (
        UniqueConstraint('organization_id', 'quote_number', name='uq_quote_org_number'),
        Index(
            'uq_quotes_one_winner_per_rfq', 'rfq_id', unique=True,
            postgresql_where=text("is_winning"),
            sqlite_where=text("is_winning = 1"),
        ),
        Index(
            'uq_quotes_active_per_supplier', 'rfq_id', 'supplier_id', unique=True,
            postgresql_where=text("status != 'withdrawn'"),
            sqlite_where=text("status != 'withdrawn'"),
        ),
    )


QUOTE_PRICE_FIELDS = ("base_price", "additional_costs", "total_price", "currency")


@event.listens_for(Quote, "before_update")
def _guard_winning_quote_pricing(mapper, connection, target):
    """Price fields of a quote are frozen once it has won its RFQ."""
    state = inspect(target)
    winning_history = state.attrs.is_winning.history
    if winning_history.has_changes():
        was_winning = bool(winning_history.deleted and winning_history.deleted[0])
    else:
        was_winning = bool(target.is_winning)
    if not was_winning:
        return

    changed = [f for f in QUOTE_PRICE_FIELDS if getattr(state.attrs, f).history.has_changes()]
    if changed:
        raise ImmutableQuoteError(target.id, changed)


class Order(Base):
    """Order created from an awarded quote."""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    order_number = Column(String(64), nullable=False)
    domain = Column(String(50), nullable=False)
    request_id = Column(Integer, ForeignKey("sourcing_requests.id"), nullable=False)
    rfq_id = Column(Integer, ForeignKey("rfqs.id"), nullable=False)
    quote_id = Column(Integer, ForeignKey("quotes.id"), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False, index=True)
    agreed_price = Column(Float, nullable=False)
    currency = Column(String(10), default="EUR")
    status = Column(OrderStatusType, default=OrderStatus.PENDING.value, nullable=False, index=True)
    promised_delivery_at = Column(DateTime(timezone=True))

    # Derived from the tracking event stream
    progress_percent = Column(Float, default=0.0, nullable=False)
    delay_risk_score = Column(Float, default=0.0, nullable=False)
    predicted_next_event = Column(String(32))
    predicted_next_event_at = Column(DateTime(timezone=True))
    last_event_type = Column(String(32))
    last_event_at = Column(DateTime(timezone=True))
    route_efficiency = Column(Float)
    actual_delivery_at = Column(DateTime(timezone=True))

    # Filled in on completion
    performance_rating = Column(Float)
    satisfaction_rating = Column(Integer)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    quote = relationship("Quote")
    customer = relationship("Customer")
    supplier = relationship("Supplier")
    tracking_events = relationship(
        "TrackingEvent", back_populates="order", order_by="TrackingEvent.timestamp"
    )

    __table_args__ = (
        UniqueConstraint('organization_id', 'order_number', name='uq_order_org_number'),
        UniqueConstraint('rfq_id', name='uq_orders_rfq'),
    )


class TrackingEvent(Base):
    """Append-only fulfillment event for an order."""
    __tablename__ = "tracking_events"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_key = Column(String(128), nullable=False)
    event_type = Column(TrackingEventTypeType, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    location = Column(String(255))
    description = Column(Text)
    reported_by = Column(String(50))  # carrier, supplier, system
    predicted_next_event = Column(String(32))
    delay_risk_score = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="tracking_events")

    __table_args__ = (
        UniqueConstraint('order_id', 'event_key', name='uq_tracking_event_key'),
    )
