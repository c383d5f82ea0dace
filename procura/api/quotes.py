"""
Quote API routes: listing, withdrawal and analysis.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from procura.api.deps import get_reasoning_advisor
from procura.api.serializers import ok, page, serialize_quote
from procura.core.rbac import get_current_user_context, require_operator
from procura.db.session import get_db
from procura.services.quote_intake import QuoteIntakeService
from procura.services.reasoning import ReasoningAdvisor
from procura.services.scoring import ScoringEngine

router = APIRouter(prefix="/quotes", tags=["Quotes"])


@router.get("")
def list_quotes(
    status: Optional[str] = Query(None, description="Filter by status"),
    rfq_id: Optional[int] = Query(None),
    supplier_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_context: dict = Depends(get_current_user_context),
    db: Session = Depends(get_db)
):
    quotes, total = QuoteIntakeService(db, user_context["org_id"], user_context["user_id"]).list_quotes(
        status=status,
        rfq_id=rfq_id,
        supplier_id=supplier_id,
        limit=limit,
        offset=offset,
    )
    return page([serialize_quote(q) for q in quotes], total, limit, offset)


@router.post("/{quote_id}/withdraw")
def withdraw_quote(
    quote_id: int,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    quote = QuoteIntakeService(db, user_context["org_id"], user_context["user_id"]).withdraw_quote(quote_id)
    return ok(serialize_quote(quote))


@router.post("/{quote_id}/analysis")
def analyze_quote(
    quote_id: int,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db),
    advisor: ReasoningAdvisor = Depends(get_reasoning_advisor),
):
    """
    Deterministic score and rank for the quote's RFQ, plus an advisory
    opinion when the reasoning service answers in time.
    """
    engine = ScoringEngine(db, user_context["org_id"], user_context["user_id"], advisor=advisor)
    result = engine.analyze_quote(quote_id)
    advisory = result["advisory"]
    return ok({
        "quote": serialize_quote(result["quote"]),
        "ranking": [
            {"quote_id": q.id, "rank": q.rank, "score": q.score, "recommendation": q.recommendation}
            for q in result["ranking"]
        ],
        "advisory": advisory.model_dump(mode="json") if advisory else None,
        "enriched": advisory is not None,
    })
