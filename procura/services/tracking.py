"""
Order tracking and delay prediction.

Events follow the canonical chain

    REGISTERED -> PICKED_UP -> IN_TRANSIT -> OUT_FOR_DELIVERY -> DELIVERED

with EXCEPTION as a side state. Each event is stored once per
(order, event_key); replays return the stored event and change nothing.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from procura.core.clock import to_naive_utc, utcnow
from procura.core.errors import InvalidStateTransition, NotFound, ValidationError
from procura.core.logging import get_logger
from procura.db.models import Order, OrderStatus, Supplier, TrackingEvent, TrackingEventType
from procura.db.session import unit_of_work
from procura.services.audit import record_audit
from procura.services.profiles import DomainProfile, get_profile

logger = get_logger(__name__)

CANONICAL_STEPS = [
    TrackingEventType.REGISTERED.value,
    TrackingEventType.PICKED_UP.value,
    TrackingEventType.IN_TRANSIT.value,
    TrackingEventType.OUT_FOR_DELIVERY.value,
    TrackingEventType.DELIVERED.value,
]

PROGRESS = {
    TrackingEventType.REGISTERED.value: 20.0,
    TrackingEventType.PICKED_UP.value: 40.0,
    TrackingEventType.IN_TRANSIT.value: 70.0,
    TrackingEventType.OUT_FOR_DELIVERY.value: 90.0,
    TrackingEventType.DELIVERED.value: 100.0,
}

EVENT_TYPES = frozenset(e.value for e in TrackingEventType)

# Statuses an order may still report after only a REGISTERED step
PRE_TRANSIT_STATUSES = (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value)

CLOSED_ORDER_STATUSES = (OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value)

# Weights of the delay-risk components
WINDOW_WEIGHT = 0.45
EXCEPTION_WEIGHT = 0.35
STALENESS_WEIGHT = 0.20

EXCEPTION_ETA_FACTOR = 1.5


@dataclass
class TrackingResult:
    event: TrackingEvent
    order: Order
    duplicate: bool = False


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def derive_event_key(order_id: int, event_type: str, timestamp: datetime, location: Optional[str]) -> str:
    """Stable idempotency key for events that arrive without one."""
    parts = [str(order_id), event_type, timestamp.isoformat(), (location or "").strip().lower()]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def current_step(progress_percent: float) -> Optional[str]:
    """Most advanced canonical step reached for a progress value."""
    reached = [step for step in CANONICAL_STEPS if PROGRESS[step] <= progress_percent]
    return reached[-1] if reached else None


def status_for_event(event_type: str, step: Optional[str], current_status: str) -> str:
    """
    Order status after an event, taken from the step the order has reached
    rather than the event itself, so late events never move it backwards.
    """
    if event_type == TrackingEventType.EXCEPTION.value:
        return OrderStatus.DISPUTED.value
    if step == TrackingEventType.DELIVERED.value:
        return OrderStatus.COMPLETED.value
    if step == TrackingEventType.REGISTERED.value and current_status in PRE_TRANSIT_STATUSES:
        return OrderStatus.CONFIRMED.value
    return OrderStatus.IN_PROGRESS.value


def predict_next_event(
    profile: DomainProfile,
    step: Optional[str],
    at: datetime,
    after_exception: bool = False,
) -> Dict[str, Any]:
    """Next canonical step after `step` and when it is expected."""
    if step == TrackingEventType.DELIVERED.value:
        return {"event": None, "at": None}
    next_index = CANONICAL_STEPS.index(step) + 1 if step else 0
    hours = profile.lane_norm(step or TrackingEventType.REGISTERED.value)
    if after_exception:
        hours *= EXCEPTION_ETA_FACTOR
    return {"event": CANONICAL_STEPS[next_index], "at": at + timedelta(hours=hours)}


def delay_risk(
    order: Order,
    profile: DomainProfile,
    at: datetime,
    progress_percent: float,
    exception_signal: float,
    previous_type: Optional[str],
    previous_at: Optional[datetime],
) -> float:
    """
    Delay risk in [0, 1]:

        0.45 * window + 0.35 * exception + 0.20 * staleness

    window is 1 once the promised date has passed, otherwise how far time
    used runs ahead of progress made; staleness grows once the gap since the
    previous event exceeds the lane norm for that step.
    """
    created = to_naive_utc(order.created_at)
    promised = to_naive_utc(order.promised_delivery_at)

    window = 0.0
    if promised is not None:
        if at > promised:
            window = 1.0
        elif created is not None and promised > created:
            time_used = (at - created).total_seconds() / (promised - created).total_seconds()
            window = _clamp01(2.0 * (time_used - progress_percent / 100.0))

    staleness = 0.0
    since = to_naive_utc(previous_at) or created
    if since is not None and at > since:
        norm_hours = profile.lane_norm(previous_type or TrackingEventType.REGISTERED.value)
        elapsed_hours = (at - since).total_seconds() / 3600.0
        staleness = _clamp01((elapsed_hours / norm_hours - 1.0) / 2.0)

    score = WINDOW_WEIGHT * window + EXCEPTION_WEIGHT * exception_signal + STALENESS_WEIGHT * staleness
    return round(_clamp01(score), 4)


def route_efficiency(created: datetime, promised: Optional[datetime], delivered: datetime) -> float:
    """min(100, 100 * expected / actual) over the order's lifetime."""
    if promised is None:
        return 100.0
    expected = (promised - created).total_seconds()
    actual = (delivered - created).total_seconds()
    if actual <= 0:
        return 100.0
    return round(min(100.0, max(0.0, 100.0 * expected / actual)), 2)


class TrackingService:
    """Tracking events, predictions and completion ratings for one tenant."""

    def __init__(self, db: Session, org_id: int, user_id: Optional[int] = None):
        self.db = db
        self.org_id = org_id
        self.user_id = user_id

    def get_order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(
            Order.id == order_id,
            Order.organization_id == self.org_id,
        ).first()
        if not order:
            raise NotFound("Order", order_id)
        return order

    def _find_event(self, order_id: int, event_key: str) -> Optional[TrackingEvent]:
        return self.db.query(TrackingEvent).filter(
            TrackingEvent.order_id == order_id,
            TrackingEvent.event_key == event_key,
        ).first()

    def record_tracking_event(
        self,
        order_id: int,
        event_type: str,
        location: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        event_key: Optional[str] = None,
        description: Optional[str] = None,
        reported_by: Optional[str] = None,
    ) -> TrackingResult:
        order = self.get_order(order_id)

        if event_type not in EVENT_TYPES:
            raise ValidationError(
                f"Unknown tracking event type '{event_type}'",
                field="event_type",
                details={"allowed": [e.value for e in TrackingEventType]},
            )
        # A derived key is only stable when the reporter supplies the time
        if not event_key and timestamp is None:
            raise ValidationError("Either event_key or timestamp is required", field="timestamp")
        at = to_naive_utc(timestamp) or utcnow()
        key = event_key or derive_event_key(order.id, event_type, at, location)

        existing = self._find_event(order.id, key)
        if existing:
            return TrackingResult(event=existing, order=order, duplicate=True)

        if order.status in CLOSED_ORDER_STATUSES:
            raise InvalidStateTransition("Order", order.status, "track")

        profile = get_profile(order.domain)
        is_exception = event_type == TrackingEventType.EXCEPTION.value
        previous_type = order.last_event_type
        previous_at = order.last_event_at

        # Progress never moves backwards; EXCEPTION keeps what was reached
        progress = order.progress_percent or 0.0
        if not is_exception:
            progress = max(progress, PROGRESS[event_type])
        step = current_step(progress)

        had_exception = previous_type == TrackingEventType.EXCEPTION.value
        exception_signal = 1.0 if is_exception else (0.5 if had_exception else 0.0)
        risk = delay_risk(order, profile, at, progress, exception_signal, previous_type, previous_at)
        prediction = predict_next_event(profile, step, at, after_exception=is_exception)

        new_status = status_for_event(event_type, step, order.status)
        first_dispute = is_exception and order.status != OrderStatus.DISPUTED.value
        delivered = new_status == OrderStatus.COMPLETED.value

        try:
            with unit_of_work(self.db):
                event = TrackingEvent(
                    organization_id=self.org_id,
                    order_id=order.id,
                    event_key=key,
                    event_type=event_type,
                    timestamp=at,
                    location=location,
                    description=description,
                    reported_by=reported_by,
                    predicted_next_event=prediction["event"],
                    delay_risk_score=risk,
                    created_at=utcnow(),
                )
                self.db.add(event)

                previous_status = order.status
                order.status = new_status
                order.progress_percent = progress
                order.delay_risk_score = risk
                order.predicted_next_event = prediction["event"]
                order.predicted_next_event_at = prediction["at"]
                if previous_at is None or at >= to_naive_utc(previous_at):
                    order.last_event_type = event_type
                    order.last_event_at = at

                if first_dispute:
                    self.db.execute(
                        update(Supplier)
                        .where(Supplier.id == order.supplier_id)
                        .values(dispute_count=Supplier.dispute_count + 1, last_activity_at=at)
                        .execution_options(synchronize_session=False)
                    )

                if delivered:
                    self._complete(order, at)

                self.db.flush()
                record_audit(
                    self.db, self.org_id, "tracking_event_recorded", "order", order.id,
                    user_id=self.user_id,
                    details={
                        "event_id": event.id,
                        "event_type": event_type,
                        "from": previous_status,
                        "to": new_status,
                        "delay_risk_score": risk,
                    },
                )
        except IntegrityError:
            # Concurrent replay of the same event key
            existing = self._find_event(order.id, key)
            if existing is None:
                raise
            self.db.refresh(order)
            return TrackingResult(event=existing, order=order, duplicate=True)

        logger.info(f"Order {order.order_number}: {event_type} -> {new_status} (risk {risk})")
        return TrackingResult(event=event, order=order)

    def _complete(self, order: Order, at: datetime) -> None:
        created = to_naive_utc(order.created_at)
        promised = to_naive_utc(order.promised_delivery_at)
        efficiency = route_efficiency(created, promised, at)
        on_time = 100.0 if promised is None or at <= promised else 0.0

        order.actual_delivery_at = at
        order.route_efficiency = efficiency
        order.performance_rating = efficiency
        order.predicted_next_event = None
        order.predicted_next_event_at = None

        # Running averages over completed orders; the first one replaces the default
        self.db.execute(
            update(Supplier)
            .where(Supplier.id == order.supplier_id)
            .values(
                performance_score=(
                    Supplier.performance_score * Supplier.completed_orders + efficiency
                ) / (Supplier.completed_orders + 1),
                on_time_delivery_rate=(
                    Supplier.on_time_delivery_rate * Supplier.completed_orders + on_time
                ) / (Supplier.completed_orders + 1),
                completed_orders=Supplier.completed_orders + 1,
                last_activity_at=at,
            )
            .execution_options(synchronize_session=False)
        )

    def get_tracking(self, order_id: int) -> Dict[str, Any]:
        order = self.get_order(order_id)
        events: List[TrackingEvent] = self.db.query(TrackingEvent).filter(
            TrackingEvent.order_id == order.id,
        ).order_by(TrackingEvent.timestamp.desc(), TrackingEvent.id.desc()).all()
        return {
            "order": order,
            "events": events,
            "prediction": {
                "next_event": order.predicted_next_event,
                "next_event_at": order.predicted_next_event_at,
                "delay_risk_score": order.delay_risk_score,
                "progress_percent": order.progress_percent,
            },
        }

    def rate_order(self, order_id: int, satisfaction: int) -> Order:
        order = self.get_order(order_id)
        if isinstance(satisfaction, bool) or not isinstance(satisfaction, int) or not 1 <= satisfaction <= 5:
            raise ValidationError("Satisfaction must be an integer from 1 to 5", field="satisfaction")
        if order.status != OrderStatus.COMPLETED.value:
            raise InvalidStateTransition("Order", order.status, "rate")
        if order.satisfaction_rating is not None:
            raise InvalidStateTransition("Order", "rated", "rate")

        quality = satisfaction * 20.0
        with unit_of_work(self.db):
            order.satisfaction_rating = satisfaction
            self.db.execute(
                update(Supplier)
                .where(Supplier.id == order.supplier_id)
                .values(
                    quality_score=(
                        Supplier.quality_score * Supplier.rated_orders + quality
                    ) / (Supplier.rated_orders + 1),
                    rated_orders=Supplier.rated_orders + 1,
                )
                .execution_options(synchronize_session=False)
            )
            record_audit(
                self.db, self.org_id, "order_rated", "order", order.id,
                user_id=self.user_id,
                details={"satisfaction": satisfaction, "supplier_id": order.supplier_id},
            )
        return order
