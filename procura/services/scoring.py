"""
Quote scoring engine.

Weighted multi-criteria score per eligible quote:

    score = sum(weight_i * criterion_i)      weights snapshotted on the RFQ, sum 1.0

Each criterion is on a 0-100 scale. The result is deterministic for
unchanged inputs; the advisory overlay from the reasoning service is stored
in separate columns and never feeds back into score or rank.
"""
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from procura.core.clock import utcnow
from procura.core.errors import InvalidStateTransition, NotFound, RfqExpired
from procura.core.logging import get_logger
from procura.db.models import Quote, QuoteStatus, Recommendation, RFQ, RFQStatus, Supplier
from procura.db.session import unit_of_work
from procura.services.audit import record_audit
from procura.services.profiles import CRITERIA, get_profile
from procura.services.quote_intake import expire_elapsed_quotes
from procura.services.reasoning import AdvisoryResponse, ReasoningAdvisor, get_advisor
from procura.services.rfq_publisher import RFQPublisher

logger = get_logger(__name__)

SCORABLE_RFQ_STATUSES = (RFQStatus.PUBLISHED.value, RFQStatus.UNDER_EVALUATION.value)
ELIGIBLE_QUOTE_STATUSES = (QuoteStatus.SUBMITTED.value, QuoteStatus.UNDER_REVIEW.value)

DELIVERY_BASELINE = 70.0


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


# ============= CRITERIA =============

def price_score(price: float, min_price: float, max_price: float) -> float:
    """100 at the cheapest eligible quote, 50 at the most expensive."""
    if price <= min_price or max_price <= min_price:
        return 100.0
    return clamp(100.0 - 50.0 * (price - min_price) / (max_price - min_price))


def delivery_score(lead_time_days: float, requested_days: Optional[float]) -> float:
    """70 at the requested lead time; rises to 100 at zero days, falls to 0 at double."""
    if not requested_days or requested_days <= 0:
        return DELIVERY_BASELINE
    if lead_time_days <= requested_days:
        return clamp(DELIVERY_BASELINE + 30.0 * (requested_days - lead_time_days) / requested_days)
    return clamp(DELIVERY_BASELINE - DELIVERY_BASELINE * (lead_time_days - requested_days) / requested_days)


def quality_score(supplier: Supplier) -> float:
    return clamp((supplier.reliability_score + supplier.quality_score + supplier.performance_score) / 3.0)


def capability_score(required: Iterable[str], supplier: Supplier) -> float:
    required = {r.strip().lower() for r in required or [] if r and r.strip()}
    if not required:
        return 100.0
    offered = set()
    for values in (supplier.capabilities, supplier.certifications, supplier.service_types):
        offered.update(v.strip().lower() for v in values or [] if isinstance(v, str))
    return clamp(100.0 * len(required & offered) / len(required))


def risk_estimate(quote: Quote, rfq: RFQ, supplier: Supplier, requested_days: Optional[float]) -> Dict[str, float]:
    """Risk points by factor; the criterion score is 100 minus their sum."""
    factors = {"budget_overrun": 0.0, "urgency_mismatch": 0.0, "dispute_history": 0.0, "no_history": 0.0}

    # Factor 1: budget overrun exposure (50% over budget = full 40 points)
    if rfq.budget and rfq.budget > 0 and quote.total_price > rfq.budget:
        overrun = (quote.total_price - rfq.budget) / rfq.budget
        factors["budget_overrun"] = min(40.0, 80.0 * overrun)

    # Factor 2: urgent request, slow quote
    if rfq.is_urgent and requested_days and quote.lead_time_days > requested_days:
        slip = (quote.lead_time_days - requested_days) / requested_days
        factors["urgency_mismatch"] = min(30.0, 30.0 * slip)

    # Factor 3: dispute rate across past orders
    if supplier.total_orders:
        factors["dispute_history"] = min(30.0, 100.0 * supplier.dispute_count / supplier.total_orders)

    # Factor 4: no track record at all
    if not supplier.total_orders:
        factors["no_history"] = 10.0

    return factors


def recommendation_for(score: float) -> Recommendation:
    if score >= 85:
        return Recommendation.HIGHLY_RECOMMENDED
    if score >= 70:
        return Recommendation.RECOMMENDED
    if score >= 50:
        return Recommendation.ACCEPTABLE
    return Recommendation.NOT_RECOMMENDED


def ranking_key(quote: Quote):
    """Higher score first; ties go to lower price, shorter lead time, earlier submission, lower id."""
    return (-(quote.score or 0.0), quote.total_price, quote.lead_time_days, quote.submitted_at, quote.id)


def build_rationale(breakdown: Dict[str, float], weights: Dict[str, float], labels: Dict[str, str],
                    rank: int, total: int, recommendation: Recommendation) -> str:
    weighted = [c for c in CRITERIA if weights.get(c)]
    parts = [f"{labels.get(c, c)} {breakdown[c]:.0f}/100" for c in weighted]
    strongest = max(weighted, key=lambda c: breakdown[c] * weights[c])
    return (
        f"Ranked {rank} of {total} ({recommendation.value.replace('_', ' ').lower()}). "
        f"{'; '.join(parts)}. Largest contribution: {labels.get(strongest, strongest)}."
    )


def score_quotes(rfq: RFQ, quotes: List[Quote], suppliers: Dict[int, Supplier]) -> List[Quote]:
    """Score and rank the given eligible quotes in place; returns them in rank order."""
    if not quotes:
        return []

    weights = rfq.criteria_weights or {}
    labels = get_profile(rfq.domain).criteria_labels
    prices = [q.total_price for q in quotes]
    min_price, max_price = min(prices), max(prices)
    requested_days = rfq.requested_lead_time_days or (
        sum(q.lead_time_days for q in quotes) / len(quotes)
    )

    for quote in quotes:
        supplier = suppliers[quote.supplier_id]
        risk_factors = risk_estimate(quote, rfq, supplier, rfq.requested_lead_time_days)
        breakdown = {
            "price": price_score(quote.total_price, min_price, max_price),
            "delivery": delivery_score(quote.lead_time_days, requested_days),
            "quality": quality_score(supplier),
            "capability": capability_score(rfq.required_capabilities, supplier),
            "risk": clamp(100.0 - sum(risk_factors.values())),
        }
        total = sum(weights.get(c, 0.0) * breakdown[c] for c in CRITERIA)
        quote.score = round(clamp(total), 2)
        stored = {c: round(v, 2) for c, v in breakdown.items()}
        stored["risk_factors"] = {k: round(v, 2) for k, v in risk_factors.items()}
        quote.score_breakdown = stored

    ranked = sorted(quotes, key=ranking_key)
    for rank, quote in enumerate(ranked, start=1):
        tier = recommendation_for(quote.score)
        quote.rank = rank
        quote.recommendation = tier.value
        quote.rationale = build_rationale(
            {c: quote.score_breakdown[c] for c in CRITERIA}, weights, labels, rank, len(ranked), tier
        )
    return ranked


class ScoringEngine:
    """Scores an RFQ's quotes and asks the advisory service for second opinions."""

    def __init__(self, db: Session, org_id: int, user_id: Optional[int] = None,
                 advisor: Optional[ReasoningAdvisor] = None):
        self.db = db
        self.org_id = org_id
        self.user_id = user_id
        self.advisor = advisor or get_advisor()

    def score_and_rank(self, rfq_id: int, close_bidding: bool = False) -> List[Quote]:
        rfq = RFQPublisher(self.db, self.org_id, self.user_id).get_rfq(rfq_id)
        if rfq.status == RFQStatus.EXPIRED.value:
            raise RfqExpired(rfq.id)
        if rfq.status not in SCORABLE_RFQ_STATUSES:
            raise InvalidStateTransition("RFQ", rfq.status, "score")

        now = utcnow()
        with unit_of_work(self.db):
            expired = expire_elapsed_quotes(self.db, rfq.id, now)
            quotes = self.db.query(Quote).filter(
                Quote.rfq_id == rfq.id,
                Quote.status.in_(ELIGIBLE_QUOTE_STATUSES),
            ).all()
            supplier_ids = {q.supplier_id for q in quotes}
            suppliers = {
                s.id: s for s in self.db.query(Supplier).filter(Supplier.id.in_(supplier_ids))
            } if supplier_ids else {}

            ranked = score_quotes(rfq, quotes, suppliers)
            for quote in ranked:
                quote.scored_at = now
                if quote.status == QuoteStatus.SUBMITTED.value:
                    quote.status = QuoteStatus.UNDER_REVIEW.value

            if close_bidding and rfq.status == RFQStatus.PUBLISHED.value:
                rfq.status = RFQStatus.UNDER_EVALUATION.value

            record_audit(
                self.db, self.org_id, "rfq_scored", "rfq", rfq.id,
                user_id=self.user_id,
                details={
                    "ranking": [{"quote_id": q.id, "score": q.score, "rank": q.rank} for q in ranked],
                    "expired_quotes": expired,
                    "status": rfq.status,
                },
            )

        logger.info(f"Scored {len(ranked)} quotes on RFQ {rfq.rfq_number}")
        return ranked

    def _advisory_context(self, quote: Quote) -> Dict[str, Any]:
        rfq = quote.rfq
        supplier = quote.supplier
        request = rfq.request
        return {
            "quote": {
                "quote_number": quote.quote_number,
                "total_price": quote.total_price,
                "currency": quote.currency,
                "lead_time_days": quote.lead_time_days,
                "valid_until": quote.valid_until,
                "delivery_terms": quote.delivery_terms,
                "payment_terms": quote.payment_terms,
            },
            "supplier": {
                "company_name": supplier.company_name,
                "total_orders": supplier.total_orders,
                "completed_orders": supplier.completed_orders,
                "dispute_count": supplier.dispute_count,
                "win_rate": supplier.win_rate,
                "on_time_delivery_rate": supplier.on_time_delivery_rate,
                "reliability_score": supplier.reliability_score,
                "quality_score": supplier.quality_score,
                "performance_score": supplier.performance_score,
            },
            "requirement": {
                "domain": rfq.domain,
                "category": request.category if request else None,
                "origin": request.origin if request else None,
                "destination": request.destination if request else None,
                "service_type": request.service_type if request else None,
                "budget": rfq.budget,
                "requested_lead_time_days": rfq.requested_lead_time_days,
                "is_urgent": rfq.is_urgent,
                "required_capabilities": rfq.required_capabilities or [],
            },
            "score": quote.score,
            "rank": quote.rank,
            "recommendation": quote.recommendation,
            "breakdown": {c: (quote.score_breakdown or {}).get(c) for c in CRITERIA},
        }

    def get_quote(self, quote_id: int) -> Quote:
        quote = self.db.query(Quote).filter(
            Quote.id == quote_id,
            Quote.organization_id == self.org_id,
        ).first()
        if not quote:
            raise NotFound("Quote", quote_id)
        return quote

    def enrich_quote(self, quote_id: int) -> Optional[AdvisoryResponse]:
        """Attach an advisory overlay to an already scored quote; None when unavailable."""
        quote = self.get_quote(quote_id)
        if quote.score is None:
            return None

        advisory = self.advisor.advise(self._advisory_context(quote))
        if advisory is None:
            return None

        with unit_of_work(self.db):
            quote.advisory_confidence = advisory.confidence
            quote.advisory_recommendation = advisory.recommendation.value
            quote.advisory_rationale = advisory.rationale
            quote.advisory_at = utcnow()
            record_audit(
                self.db, self.org_id, "quote_advisory_recorded", "quote", quote.id,
                user_id=self.user_id,
                details={
                    "confidence": advisory.confidence,
                    "recommendation": advisory.recommendation.value,
                },
            )
        return advisory

    def analyze_quote(self, quote_id: int) -> Dict[str, Any]:
        """
        Deterministic scoring for the quote's RFQ, then an optional advisory
        opinion on this quote. The scoring result is committed before the
        advisory call and is returned even when enrichment fails.
        """
        quote = self.get_quote(quote_id)
        ranked = self.score_and_rank(quote.rfq_id)
        advisory = self.enrich_quote(quote.id) if self.advisor.enabled else None
        return {"quote": quote, "ranking": ranked, "advisory": advisory}
