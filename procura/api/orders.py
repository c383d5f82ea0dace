"""
Order API routes: order reads, tracking events and completion ratings.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from procura.api.serializers import ok, serialize_event, serialize_order
from procura.core.rbac import get_current_user_context, require_operator
from procura.db.models import TrackingEventType
from procura.db.session import get_db
from procura.services.tracking import TrackingService

router = APIRouter(prefix="/orders", tags=["Orders"])


# ============= SCHEMAS =============

class TrackingEventCreate(BaseModel):
    event_type: TrackingEventType
    location: Optional[str] = None
    timestamp: Optional[datetime] = None
    event_key: Optional[str] = Field(None, max_length=128)
    description: Optional[str] = None
    reported_by: Optional[str] = None  # carrier, supplier, system


class RatingCreate(BaseModel):
    satisfaction: int = Field(ge=1, le=5)


def _service(db: Session, user_context: dict) -> TrackingService:
    return TrackingService(db, user_context["org_id"], user_context["user_id"])


# ============= ROUTES =============

@router.get("/{order_id}")
def get_order(
    order_id: int,
    user_context: dict = Depends(get_current_user_context),
    db: Session = Depends(get_db)
):
    order = _service(db, user_context).get_order(order_id)
    return ok(serialize_order(order))


@router.post("/{order_id}/tracking")
def record_tracking_event(
    order_id: int,
    payload: TrackingEventCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    """Append a tracking event; replays of the same event key are no-ops."""
    result = _service(db, user_context).record_tracking_event(
        order_id,
        payload.event_type.value,
        location=payload.location,
        timestamp=payload.timestamp,
        event_key=payload.event_key,
        description=payload.description,
        reported_by=payload.reported_by,
    )
    return ok({
        "event": serialize_event(result.event),
        "order": serialize_order(result.order),
        "duplicate": result.duplicate,
    })


@router.get("/{order_id}/tracking")
def get_tracking(
    order_id: int,
    user_context: dict = Depends(get_current_user_context),
    db: Session = Depends(get_db)
):
    tracking = _service(db, user_context).get_tracking(order_id)
    return ok({
        "order": serialize_order(tracking["order"]),
        "events": [serialize_event(e) for e in tracking["events"]],
        "prediction": tracking["prediction"],
    })


@router.post("/{order_id}/rating")
def rate_order(
    order_id: int,
    payload: RatingCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    order = _service(db, user_context).rate_order(order_id, payload.satisfaction)
    return ok(serialize_order(order))
