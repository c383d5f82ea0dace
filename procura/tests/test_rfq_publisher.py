"""
Tests for the RFQ publisher: publish gates, weights, lifecycle and expiry.
"""
from datetime import timedelta

import pytest

from procura.core.clock import utcnow
from procura.core.errors import (
    ConflictError, InvalidStateTransition, NotFound, RfqExpired, ValidationError,
)
from procura.db.models import AuditLog, QuoteStatus, RFQ, RFQStatus
from procura.services.rfq_publisher import (
    RFQPublisher, effective_status, expire_overdue_rfqs, normalize_weights,
)


def _force_deadline(db, rfq, when):
    rfq.deadline = when
    db.commit()


class TestNormalizeWeights:
    """Criteria weights are validated and scaled to sum to 1.0."""

    def test_weights_scaled_to_one(self):
        weights = normalize_weights({"price": 2, "quality": 2})
        assert weights["price"] == pytest.approx(0.5)
        assert weights["quality"] == pytest.approx(0.5)
        assert weights["delivery"] == 0.0
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_profile_defaults_when_none(self):
        weights = normalize_weights(None, "professional_services")
        assert weights["quality"] == pytest.approx(0.30)
        assert sum(weights.values()) == pytest.approx(1.0)

    @pytest.mark.parametrize("weights", [
        {},
        {"price": 1, "karma": 1},
        {"price": -0.5, "quality": 1},
        {"price": 0, "quality": 0},
        {"price": "high"},
        {"price": True},
    ])
    def test_invalid_weights_rejected(self, weights):
        with pytest.raises(ValidationError):
            normalize_weights(weights)


class TestPublishRfq:
    """Publishing an RFQ from a request."""

    def test_publish_snapshots_request(self, db, org, make_request, suppliers):
        request = make_request(requirements={"capabilities": ["FTL"], "certifications": ["GDP"]}, budget=5000)
        rfq = RFQPublisher(db, org.id, user_id=1).publish_rfq(
            request_id=request.id,
            deadline=utcnow() + timedelta(days=7),
            criteria_weights={"price": 3, "delivery": 1},
            target_supplier_ids=[suppliers[0].id, suppliers[0].id, suppliers[1].id],
        )

        assert rfq.status == RFQStatus.PUBLISHED.value
        assert rfq.rfq_number.startswith("RFQ-")
        assert rfq.criteria_weights["price"] == pytest.approx(0.75)
        assert rfq.required_capabilities == ["FTL", "GDP"]
        assert rfq.target_supplier_ids == [suppliers[0].id, suppliers[1].id]
        assert rfq.budget == 5000
        assert rfq.requested_lead_time_days == 5
        assert rfq.published_at is not None
        assert db.query(AuditLog).filter(AuditLog.action == "rfq_published").count() == 1

    def test_submitted_request_needs_approval(self, db, org, make_request):
        request = make_request(status="submitted")
        with pytest.raises(InvalidStateTransition):
            RFQPublisher(db, org.id).publish_rfq(request.id, utcnow() + timedelta(days=7))

    def test_tenant_policy_allows_publish_from_submitted(self, db, org, make_request):
        org.settings = {"allow_publish_from_submitted": True}
        db.commit()

        request = make_request(status="submitted")
        rfq = RFQPublisher(db, org.id).publish_rfq(request.id, utcnow() + timedelta(days=7))
        assert rfq.status == RFQStatus.PUBLISHED.value

    def test_draft_request_not_visible(self, db, org, make_request):
        request = make_request(status="draft")
        with pytest.raises(InvalidStateTransition):
            RFQPublisher(db, org.id).publish_rfq(request.id, utcnow() + timedelta(days=7))

    def test_archived_request_cannot_be_published(self, db, org, make_request):
        from procura.services.request_intake import RequestIntakeService

        request = make_request()
        RequestIntakeService(db, org.id).archive_request(request.id)
        with pytest.raises(InvalidStateTransition):
            RFQPublisher(db, org.id).publish_rfq(request.id, utcnow() + timedelta(days=7))

    def test_deadline_must_be_future(self, db, org, make_request):
        request = make_request()
        with pytest.raises(ValidationError):
            RFQPublisher(db, org.id).publish_rfq(request.id, utcnow() - timedelta(minutes=1))
        assert db.query(RFQ).count() == 0

    def test_unknown_supplier_rejected(self, db, org, make_request):
        request = make_request()
        with pytest.raises(ValidationError) as exc:
            RFQPublisher(db, org.id).publish_rfq(
                request.id, utcnow() + timedelta(days=7), target_supplier_ids=[999]
            )
        assert exc.value.details["missing"] == [999]

    def test_one_active_rfq_per_request(self, db, org, make_request):
        request = make_request()
        publisher = RFQPublisher(db, org.id)
        publisher.publish_rfq(request.id, utcnow() + timedelta(days=7))
        with pytest.raises(ConflictError):
            publisher.publish_rfq(request.id, utcnow() + timedelta(days=7))

    def test_draft_then_publish(self, db, org, make_request):
        request = make_request()
        publisher = RFQPublisher(db, org.id)
        rfq = publisher.publish_rfq(request.id, utcnow() + timedelta(days=7), publish=False)
        assert rfq.status == RFQStatus.DRAFT.value
        assert rfq.published_at is None

        rfq = publisher.publish_draft(rfq.id)
        assert rfq.status == RFQStatus.PUBLISHED.value
        with pytest.raises(InvalidStateTransition):
            publisher.publish_draft(rfq.id)

    def test_other_tenant_cannot_read(self, db, other_org, make_rfq):
        rfq = make_rfq()
        with pytest.raises(NotFound):
            RFQPublisher(db, other_org.id).get_rfq(rfq.id)


class TestRfqLifecycle:
    """Extend, cancel, close bidding."""

    def test_extend_deadline(self, db, org, make_rfq):
        rfq = make_rfq()
        publisher = RFQPublisher(db, org.id)
        new_deadline = rfq.deadline + timedelta(days=3)

        rfq = publisher.extend_deadline(rfq.id, new_deadline)
        assert rfq.extended_deadline == new_deadline
        assert rfq.effective_deadline == new_deadline

        with pytest.raises(ValidationError):
            publisher.extend_deadline(rfq.id, new_deadline)

    def test_extend_after_expiry_fails(self, db, org, make_rfq):
        rfq = make_rfq()
        _force_deadline(db, rfq, utcnow() - timedelta(minutes=1))
        with pytest.raises(InvalidStateTransition) as exc:
            RFQPublisher(db, org.id).extend_deadline(rfq.id, utcnow() + timedelta(days=1))
        assert exc.value.current == RFQStatus.EXPIRED.value

    def test_cancel_rejects_open_quotes(self, db, org, scenario):
        rfq, quotes = scenario
        rfq = RFQPublisher(db, org.id).cancel_rfq(rfq.id, "Customer withdrew the need")

        assert rfq.status == RFQStatus.CANCELLED.value
        assert rfq.cancel_reason == "Customer withdrew the need"
        for quote in quotes.values():
            db.refresh(quote)
            assert quote.status == QuoteStatus.REJECTED.value

    def test_cancel_twice_fails(self, db, org, make_rfq):
        rfq = make_rfq()
        publisher = RFQPublisher(db, org.id)
        publisher.cancel_rfq(rfq.id)
        with pytest.raises(InvalidStateTransition):
            publisher.cancel_rfq(rfq.id)

    def test_close_bidding(self, db, org, make_rfq):
        rfq = make_rfq()
        publisher = RFQPublisher(db, org.id)
        assert publisher.close_bidding(rfq.id).status == RFQStatus.UNDER_EVALUATION.value
        with pytest.raises(InvalidStateTransition):
            publisher.close_bidding(rfq.id)

    def test_close_bidding_after_deadline(self, db, org, make_rfq):
        rfq = make_rfq()
        _force_deadline(db, rfq, utcnow() - timedelta(seconds=1))
        with pytest.raises(RfqExpired):
            RFQPublisher(db, org.id).close_bidding(rfq.id)


class TestExpiry:
    """Lazy expiry on read and the eager sweep."""

    def test_effective_status_reads_expired(self, db, make_rfq):
        rfq = make_rfq()
        assert effective_status(rfq) == RFQStatus.PUBLISHED.value
        assert effective_status(rfq, now=rfq.deadline) == RFQStatus.EXPIRED.value

    def test_extended_deadline_counts(self, db, org, make_rfq):
        rfq = make_rfq()
        rfq = RFQPublisher(db, org.id).extend_deadline(rfq.id, rfq.deadline + timedelta(days=2))
        assert effective_status(rfq, now=rfq.deadline + timedelta(days=1)) == RFQStatus.PUBLISHED.value

    def test_read_persists_expiry(self, db, org, make_rfq):
        rfq = make_rfq()
        _force_deadline(db, rfq, utcnow() - timedelta(seconds=1))

        rfq = RFQPublisher(db, org.id).get_rfq(rfq.id)
        assert rfq.status == RFQStatus.EXPIRED.value
        assert db.query(AuditLog).filter(AuditLog.action == "rfq_expired").count() == 1

    def test_sweep_expires_rfqs_and_quotes(self, db, org, scenario):
        rfq, quotes = scenario
        quotes["A"].valid_until = utcnow() - timedelta(seconds=1)
        db.commit()

        result = expire_overdue_rfqs(db, now=rfq.deadline + timedelta(seconds=1))

        assert result["rfqs_expired"] == 1
        assert result["quotes_expired"] == 1
        db.refresh(rfq)
        assert rfq.status == RFQStatus.EXPIRED.value

    def test_sweep_leaves_open_rfqs(self, db, scenario):
        rfq, _ = scenario
        result = expire_overdue_rfqs(db)
        assert result == {"rfqs_expired": 0, "quotes_expired": 0}
        db.refresh(rfq)
        assert rfq.status == RFQStatus.PUBLISHED.value
