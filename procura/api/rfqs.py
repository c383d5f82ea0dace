"""
RFQ API routes: publishing, lifecycle, quote intake, evaluation and award.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from procura.api.deps import get_reasoning_advisor
from procura.api.serializers import ok, page, serialize_order, serialize_quote, serialize_rfq
from procura.core.errors import ValidationError
from procura.core.logging import get_logger
from procura.core.rbac import get_current_user_context, require_admin, require_operator
from procura.db.session import get_db
from procura.services.award import AwardService
from procura.services.quote_intake import QuoteIntakeService
from procura.services.reasoning import ReasoningAdvisor
from procura.services.rfq_publisher import RFQPublisher
from procura.services.scoring import ScoringEngine
from procura.workers.jobs import enqueue_quote_enrichment

logger = get_logger(__name__)

router = APIRouter(prefix="/rfqs", tags=["RFQs"])


# ============= SCHEMAS =============

class RFQCreate(BaseModel):
    request_id: int
    deadline: datetime
    criteria_weights: Optional[Dict[str, float]] = None
    target_supplier_ids: List[int] = []
    title: Optional[str] = None
    required_capabilities: Optional[List[str]] = None
    budget: Optional[float] = None
    requested_lead_time_days: Optional[float] = None
    publish: bool = True


class RFQUpdate(BaseModel):
    action: Literal["extend", "cancel", "close_bidding"]
    deadline: Optional[datetime] = None
    reason: Optional[str] = None


class AdditionalCost(BaseModel):
    label: Optional[str] = None
    amount: float


class QuoteCreate(BaseModel):
    supplier_id: int
    base_price: Optional[float] = None
    additional_costs: List[AdditionalCost] = []
    total_price: Optional[float] = None  # ignored; computed server-side
    currency: Optional[str] = None
    lead_time_days: Optional[float] = None
    valid_until: Optional[datetime] = None
    delivery_terms: Optional[str] = None
    payment_terms: Optional[str] = None
    notes: Optional[str] = None


class EvaluationRequest(BaseModel):
    close_bidding: bool = False
    enrich_async: bool = False  # queue advisory enrichment for every ranked quote


class AwardDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    quote_id: int = Field(alias="quoteId")


# ============= ROUTES =============

@router.post("")
def publish_rfq(
    payload: RFQCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    """Publish an RFQ from an approved request (or save it as DRAFT)."""
    publisher = RFQPublisher(db, user_context["org_id"], user_context["user_id"])
    rfq = publisher.publish_rfq(
        request_id=payload.request_id,
        deadline=payload.deadline,
        criteria_weights=payload.criteria_weights,
        target_supplier_ids=payload.target_supplier_ids,
        title=payload.title,
        required_capabilities=payload.required_capabilities,
        budget=payload.budget,
        requested_lead_time_days=payload.requested_lead_time_days,
        publish=payload.publish,
    )
    return ok(serialize_rfq(rfq))


@router.get("")
def list_rfqs(
    status: Optional[str] = Query(None, description="Filter by status"),
    request_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_context: dict = Depends(get_current_user_context),
    db: Session = Depends(get_db)
):
    """List RFQs, filtered on the status a reader would see (elapsed deadlines read as expired)."""
    publisher = RFQPublisher(db, user_context["org_id"], user_context["user_id"])
    rfqs, total = publisher.list_rfqs(status=status, request_id=request_id, limit=limit, offset=offset)
    return page([serialize_rfq(r) for r in rfqs], total, limit, offset)


@router.get("/{rfq_id}")
def get_rfq(
    rfq_id: int,
    user_context: dict = Depends(get_current_user_context),
    db: Session = Depends(get_db)
):
    rfq = RFQPublisher(db, user_context["org_id"], user_context["user_id"]).get_rfq(rfq_id)
    return ok(serialize_rfq(rfq, include_quotes=True))


@router.put("/{rfq_id}")
def update_rfq(
    rfq_id: int,
    update: RFQUpdate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    """Extend the deadline, cancel, or close bidding."""
    publisher = RFQPublisher(db, user_context["org_id"], user_context["user_id"])

    if update.action == "extend":
        if update.deadline is None:
            raise ValidationError("A new deadline is required", field="deadline")
        rfq = publisher.extend_deadline(rfq_id, update.deadline)
    elif update.action == "cancel":
        rfq = publisher.cancel_rfq(rfq_id, update.reason)
    else:
        rfq = publisher.close_bidding(rfq_id)

    return ok(serialize_rfq(rfq))


@router.post("/{rfq_id}/publish")
def publish_draft_rfq(
    rfq_id: int,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    rfq = RFQPublisher(db, user_context["org_id"], user_context["user_id"]).publish_draft(rfq_id)
    return ok(serialize_rfq(rfq))


@router.post("/{rfq_id}/quotes")
def submit_quote(
    rfq_id: int,
    payload: QuoteCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    service = QuoteIntakeService(db, user_context["org_id"], user_context["user_id"])
    quote = service.submit_quote(
        rfq_id=rfq_id,
        supplier_id=payload.supplier_id,
        base_price=payload.base_price,
        lead_time_days=payload.lead_time_days,
        valid_until=payload.valid_until,
        additional_costs=[c.model_dump() for c in payload.additional_costs],
        currency=payload.currency,
        delivery_terms=payload.delivery_terms,
        payment_terms=payload.payment_terms,
        notes=payload.notes,
    )
    return ok(serialize_quote(quote))


@router.post("/{rfq_id}/evaluation")
def evaluate_rfq(
    rfq_id: int,
    payload: Optional[EvaluationRequest] = None,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
    advisor: ReasoningAdvisor = Depends(get_reasoning_advisor),
):
    """Score and rank every eligible quote on the RFQ."""
    engine = ScoringEngine(db, user_context["org_id"], user_context["user_id"], advisor=advisor)
    ranked = engine.score_and_rank(rfq_id, close_bidding=bool(payload and payload.close_bidding))

    queued = 0
    if payload and payload.enrich_async and advisor.enabled:
        try:
            for quote in ranked:
                enqueue_quote_enrichment(user_context["org_id"], quote.id)
                queued += 1
        except RedisError as e:
            logger.warning(f"Could not queue advisory enrichment for RFQ {rfq_id}: {e}")

    rfq = RFQPublisher(db, user_context["org_id"], user_context["user_id"]).get_rfq(rfq_id)
    return ok({
        "rfq": serialize_rfq(rfq),
        "ranking": [serialize_quote(q) for q in ranked],
        "enrichment_queued": queued,
    })


@router.put("/{rfq_id}/award")
def award_rfq(
    rfq_id: int,
    decision: AwardDecision,
    user_context: dict = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Award the RFQ to one quote and open the order."""
    service = AwardService(db, user_context["org_id"], user_context["user_id"])
    order = service.award_quote(rfq_id, decision.quote_id)
    rfq = RFQPublisher(db, user_context["org_id"], user_context["user_id"]).get_rfq(rfq_id)
    return ok({
        "rfq": serialize_rfq(rfq),
        "quote": serialize_quote(order.quote),
        "order": serialize_order(order),
    })
