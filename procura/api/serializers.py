"""
Response envelope and entity serializers shared by the API routers.

Every response body is {"success": bool, "data": ..., "error": str}.
"""
from typing import Any, Dict, List, Optional

from procura.db.models import Order, Quote, RFQ, SourcingRequest, TrackingEvent
from procura.services.profiles import get_profile
from procura.services.rfq_publisher import effective_status


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def page(items: List[Dict[str, Any]], total: int, limit: int, offset: int) -> Dict[str, Any]:
    return ok({"items": items, "total": total, "limit": limit, "offset": offset})


def error_body(message: str, code: Optional[str] = None, details: Optional[dict] = None) -> Dict[str, Any]:
    body = {"success": False, "error": message}
    if code:
        body["code"] = code
    if details:
        body["details"] = details
    return body


def _label(domain: str, status: str) -> str:
    return get_profile(domain).status_labels.get(status, status.replace("_", " ").title())


def serialize_request(request: SourcingRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "request_number": request.request_number,
        "customer_id": request.customer_id,
        "domain": request.domain,
        "category": request.category,
        "title": request.title,
        "description": request.description,
        "origin": request.origin,
        "destination": request.destination,
        "service_type": request.service_type,
        "requirements": request.requirements or {},
        "budget": request.budget,
        "currency": request.currency,
        "deadline": request.deadline,
        "requested_lead_time_days": request.requested_lead_time_days,
        "is_urgent": request.is_urgent,
        "priority": request.priority,
        "status": request.status,
        "status_label": _label(request.domain, request.status),
        "review_notes": request.review_notes,
        "submitted_at": request.submitted_at,
        "reviewed_at": request.reviewed_at,
        "archived_at": request.archived_at,
        "created_at": request.created_at,
    }


def serialize_quote(quote: Quote) -> Dict[str, Any]:
    advisory = None
    if quote.advisory_at is not None:
        advisory = {
            "confidence": quote.advisory_confidence,
            "recommendation": quote.advisory_recommendation,
            "rationale": quote.advisory_rationale,
            "at": quote.advisory_at,
        }
    return {
        "id": quote.id,
        "quote_number": quote.quote_number,
        "rfq_id": quote.rfq_id,
        "supplier_id": quote.supplier_id,
        "supplier_name": quote.supplier.company_name if quote.supplier else None,
        "base_price": quote.base_price,
        "additional_costs": quote.additional_costs or [],
        "total_price": quote.total_price,
        "currency": quote.currency,
        "valid_until": quote.valid_until,
        "lead_time_days": quote.lead_time_days,
        "delivery_terms": quote.delivery_terms,
        "payment_terms": quote.payment_terms,
        "notes": quote.notes,
        "status": quote.status,
        "submitted_at": quote.submitted_at,
        "score": quote.score,
        "score_breakdown": quote.score_breakdown,
        "rank": quote.rank,
        "recommendation": quote.recommendation,
        "rationale": quote.rationale,
        "is_winning": quote.is_winning,
        "advisory": advisory,
    }


def serialize_rfq(rfq: RFQ, include_quotes: bool = False) -> Dict[str, Any]:
    status = effective_status(rfq)
    data = {
        "id": rfq.id,
        "rfq_number": rfq.rfq_number,
        "request_id": rfq.request_id,
        "domain": rfq.domain,
        "title": rfq.title,
        "criteria_weights": rfq.criteria_weights,
        "required_capabilities": rfq.required_capabilities or [],
        "target_supplier_ids": rfq.target_supplier_ids or [],
        "budget": rfq.budget,
        "currency": rfq.currency,
        "requested_lead_time_days": rfq.requested_lead_time_days,
        "is_urgent": rfq.is_urgent,
        "deadline": rfq.deadline,
        "extended_deadline": rfq.extended_deadline,
        "status": status,
        "status_label": _label(rfq.domain, status),
        "winning_quote_id": rfq.winning_quote_id,
        "published_at": rfq.published_at,
        "awarded_at": rfq.awarded_at,
        "cancelled_at": rfq.cancelled_at,
        "cancel_reason": rfq.cancel_reason,
        "created_at": rfq.created_at,
    }
    if include_quotes:
        quotes = sorted(rfq.quotes, key=lambda q: (q.rank is None, q.rank or 0, q.id))
        data["quotes"] = [serialize_quote(q) for q in quotes]
    return data


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "domain": order.domain,
        "request_id": order.request_id,
        "rfq_id": order.rfq_id,
        "quote_id": order.quote_id,
        "customer_id": order.customer_id,
        "supplier_id": order.supplier_id,
        "agreed_price": order.agreed_price,
        "currency": order.currency,
        "status": order.status,
        "promised_delivery_at": order.promised_delivery_at,
        "progress_percent": order.progress_percent,
        "delay_risk_score": order.delay_risk_score,
        "predicted_next_event": order.predicted_next_event,
        "predicted_next_event_at": order.predicted_next_event_at,
        "last_event_type": order.last_event_type,
        "last_event_at": order.last_event_at,
        "route_efficiency": order.route_efficiency,
        "actual_delivery_at": order.actual_delivery_at,
        "performance_rating": order.performance_rating,
        "satisfaction_rating": order.satisfaction_rating,
        "created_at": order.created_at,
    }


def serialize_event(event: TrackingEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "event_key": event.event_key,
        "event_type": event.event_type,
        "timestamp": event.timestamp,
        "location": event.location,
        "description": event.description,
        "reported_by": event.reported_by,
        "predicted_next_event": event.predicted_next_event,
        "delay_risk_score": event.delay_risk_score,
    }
