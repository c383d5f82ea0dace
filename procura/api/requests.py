"""
Sourcing request API routes.
"""
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from procura.api.serializers import ok, page, serialize_request
from procura.core.rbac import Role, get_current_user_context, has_permission, require_operator
from procura.db.session import get_db
from procura.services.request_intake import RequestIntakeService

router = APIRouter(prefix="/requests", tags=["Requests"])


# ============= SCHEMAS =============

class RequestCreate(BaseModel):
    customer_id: int
    domain: Optional[str] = None  # logistics, professional_services
    category: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    service_type: Optional[str] = None
    requirements: Optional[dict] = None
    budget: Optional[float] = None
    currency: str = "EUR"
    deadline: Optional[datetime] = None
    requested_lead_time_days: Optional[float] = Field(None, gt=0)
    is_urgent: Optional[bool] = None
    priority: Optional[str] = None


class ReviewAction(BaseModel):
    action: Literal["start", "approve", "reject"]
    notes: Optional[str] = None


def _service(db: Session, user_context: dict) -> RequestIntakeService:
    return RequestIntakeService(db, user_context["org_id"], user_context["user_id"])


# ============= ROUTES =============

@router.post("")
def create_request(
    payload: RequestCreate,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    """Capture a customer's sourcing need as a DRAFT request."""
    data = payload.model_dump(exclude={"customer_id"})
    request = _service(db, user_context).create_request(payload.customer_id, data)
    return ok(serialize_request(request))


@router.get("")
def list_requests(
    status: Optional[str] = Query(None, description="Filter by status"),
    customer_id: Optional[int] = Query(None),
    include_archived: bool = Query(False),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_context: dict = Depends(get_current_user_context),
    db: Session = Depends(get_db)
):
    requests, total = _service(db, user_context).list_requests(
        status=status,
        customer_id=customer_id,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )
    return page([serialize_request(r) for r in requests], total, limit, offset)


@router.get("/{request_id}")
def get_request(
    request_id: int,
    user_context: dict = Depends(get_current_user_context),
    db: Session = Depends(get_db)
):
    request = _service(db, user_context).get_request(request_id)
    return ok(serialize_request(request))


@router.post("/{request_id}/submit")
def submit_request(
    request_id: int,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    request = _service(db, user_context).submit_request(request_id)
    return ok(serialize_request(request))


@router.post("/{request_id}/review")
def review_request(
    request_id: int,
    review: ReviewAction,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    """Start review (operator), or approve / reject (admin)."""
    service = _service(db, user_context)

    if review.action == "start":
        request = service.start_review(request_id)
    else:
        if not has_permission(user_context["role"], Role.ADMIN):
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient permissions. Required: {Role.ADMIN.value}",
            )
        if review.action == "approve":
            request = service.approve_request(request_id, review.notes)
        else:
            request = service.reject_request(request_id, review.notes)

    return ok(serialize_request(request))


@router.post("/{request_id}/archive")
def archive_request(
    request_id: int,
    user_context: dict = Depends(require_operator),
    db: Session = Depends(get_db)
):
    request = _service(db, user_context).archive_request(request_id)
    return ok(serialize_request(request))
