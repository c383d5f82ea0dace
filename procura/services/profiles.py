"""
Domain profiles for the sourcing workflow.

Logistics and professional services run the same Request -> RFQ -> Quote ->
Order -> Tracking engine; a profile carries the few things that differ per
vertical.
"""
from dataclasses import dataclass, field
from typing import Dict, Tuple

from procura.core.config import settings
from procura.core.errors import ValidationError
from procura.db.models import TrackingEventType


CRITERIA = ("price", "delivery", "quality", "capability", "risk")


@dataclass(frozen=True)
class DomainProfile:
    """
    Per-vertical parameters for the workflow engine.

    Fields:
        key: Profile identifier stored on requests, RFQs and orders
        label: Display name
        prefixes: Numbering prefixes for request / rfq / quote / order
        required_request_fields: Request fields that must be non-blank
        default_weights: Criteria weights used when an RFQ names none
        criteria_labels: Display names for the scoring criteria
        status_labels: Display vocabulary for request/RFQ statuses
        lane_norm_hours: Typical hours from each tracking step to the next
    """
    key: str
    label: str
    prefixes: Dict[str, str]
    required_request_fields: Tuple[str, ...]
    default_weights: Dict[str, float]
    criteria_labels: Dict[str, str]
    status_labels: Dict[str, str] = field(default_factory=dict)
    lane_norm_hours: Dict[str, float] = field(default_factory=dict)

    def prefix(self, entity: str) -> str:
        return self.prefixes[entity]

    def lane_norm(self, event_type: str) -> float:
        return self.lane_norm_hours.get(event_type, 24.0)


LOGISTICS = DomainProfile(
    key="logistics",
    label="Logistics",
    prefixes={"request": "REQ", "rfq": "RFQ", "quote": "QUO", "order": "ORD"},
    required_request_fields=("category", "description", "origin", "destination"),
    default_weights={
        "price": 0.30,
        "delivery": 0.25,
        "quality": 0.20,
        "capability": 0.15,
        "risk": 0.10,
    },
    criteria_labels={
        "price": "Price Competitiveness",
        "delivery": "Delivery Performance",
        "quality": "Quality & Reliability",
        "capability": "Service Capabilities",
        "risk": "Risk Assessment",
    },
    status_labels={
        "draft": "Draft",
        "submitted": "Submitted",
        "under_review": "Under Review",
        "approved": "Approved",
        "rejected": "Rejected",
        "published": "Open for Bids",
        "under_evaluation": "Evaluating Bids",
        "awarded": "Carrier Awarded",
        "cancelled": "Cancelled",
        "expired": "Expired",
    },
    lane_norm_hours={
        TrackingEventType.REGISTERED.value: 24.0,
        TrackingEventType.PICKED_UP.value: 12.0,
        TrackingEventType.IN_TRANSIT.value: 48.0,
        TrackingEventType.OUT_FOR_DELIVERY.value: 8.0,
    },
)

PROFESSIONAL_SERVICES = DomainProfile(
    key="professional_services",
    label="Professional Services",
    prefixes={"request": "SRQ", "rfq": "SRFQ", "quote": "SQUO", "order": "SORD"},
    required_request_fields=("category", "description", "service_type"),
    default_weights={
        "price": 0.25,
        "delivery": 0.15,
        "quality": 0.30,
        "capability": 0.20,
        "risk": 0.10,
    },
    criteria_labels={
        "price": "Commercial Offer",
        "delivery": "Timeline",
        "quality": "Track Record",
        "capability": "Expertise Fit",
        "risk": "Engagement Risk",
    },
    status_labels={
        "draft": "Draft",
        "submitted": "Submitted",
        "under_review": "In Qualification",
        "approved": "Qualified",
        "rejected": "Declined",
        "published": "Tender Open",
        "under_evaluation": "Proposal Review",
        "awarded": "Engagement Awarded",
        "cancelled": "Cancelled",
        "expired": "Expired",
    },
    lane_norm_hours={
        TrackingEventType.REGISTERED.value: 72.0,
        TrackingEventType.PICKED_UP.value: 120.0,
        TrackingEventType.IN_TRANSIT.value: 240.0,
        TrackingEventType.OUT_FOR_DELIVERY.value: 48.0,
    },
)

PROFILES: Dict[str, DomainProfile] = {
    LOGISTICS.key: LOGISTICS,
    PROFESSIONAL_SERVICES.key: PROFESSIONAL_SERVICES,
}


def get_profile(key: str = None) -> DomainProfile:
    """Look up a profile by key; falls back to DEFAULT_DOMAIN_PROFILE."""
    key = key or settings.DEFAULT_DOMAIN_PROFILE
    profile = PROFILES.get(key)
    if profile is None:
        raise ValidationError(
            f"Unknown domain profile '{key}'. Available: {', '.join(sorted(PROFILES))}",
            field="domain",
        )
    return profile
