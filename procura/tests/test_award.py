"""
Tests for the award & order transition: mutual exclusion, siblings and counters.
"""
from datetime import timedelta

import pytest

from procura.core.clock import utcnow
from procura.core.errors import (
    AlreadyAwarded, ImmutableQuoteError, InvalidStateTransition, NotFound,
    QuoteExpired, RfqExpired,
)
from procura.db.models import (
    AuditLog, Customer, Order, OrderStatus, Organization, Quote, QuoteStatus, RFQ, RFQStatus, Supplier,
)
from procura.db.session import Base, build_engine, build_session_factory
from procura.services.award import AwardService
from procura.services.quote_intake import QuoteIntakeService
from procura.services.reasoning import ReasoningAdvisor
from procura.services.request_intake import RequestIntakeService
from procura.services.rfq_publisher import RFQPublisher
from procura.services.scoring import ScoringEngine


class TestAwardQuote:
    """Awarding the winning quote and opening the order."""

    def test_award_creates_pending_order(self, db, org, customer, scenario):
        rfq, quotes = scenario
        winner = quotes["A"]
        before = utcnow()

        order = AwardService(db, org.id, user_id=9).award_quote(rfq.id, winner.id)

        assert order.status == OrderStatus.PENDING.value
        assert order.agreed_price == winner.total_price == 1000.0
        assert order.order_number.startswith("ORD-")
        assert order.customer_id == customer.id
        assert order.supplier_id == winner.supplier_id
        promised = order.promised_delivery_at - before
        assert timedelta(days=5) <= promised < timedelta(days=5, minutes=1)

        assert rfq.status == RFQStatus.AWARDED.value
        assert rfq.winning_quote_id == winner.id
        assert rfq.awarded_by == 9

    def test_siblings_rejected_winner_selected(self, db, org, scenario):
        rfq, quotes = scenario
        AwardService(db, org.id).award_quote(rfq.id, quotes["C"].id)

        for quote in quotes.values():
            db.refresh(quote)
        assert quotes["C"].status == QuoteStatus.SELECTED.value
        assert quotes["C"].is_winning is True
        assert quotes["A"].status == QuoteStatus.REJECTED.value
        assert quotes["B"].status == QuoteStatus.REJECTED.value
        assert db.query(Quote).filter(Quote.is_winning.is_(True)).count() == 1

    def test_withdrawn_sibling_keeps_status(self, db, org, scenario):
        rfq, quotes = scenario
        QuoteIntakeService(db, org.id).withdraw_quote(quotes["B"].id)
        AwardService(db, org.id).award_quote(rfq.id, quotes["A"].id)

        db.refresh(quotes["B"])
        assert quotes["B"].status == QuoteStatus.WITHDRAWN.value

    def test_award_after_evaluation(self, db, org, scenario):
        rfq, quotes = scenario
        ranked = ScoringEngine(db, org.id, advisor=ReasoningAdvisor(None)).score_and_rank(rfq.id, close_bidding=True)
        order = AwardService(db, org.id).award_quote(rfq.id, ranked[0].id)
        assert order.quote_id == quotes["A"].id

    def test_award_is_audited(self, db, org, scenario):
        rfq, quotes = scenario
        order = AwardService(db, org.id).award_quote(rfq.id, quotes["A"].id)
        entry = db.query(AuditLog).filter(AuditLog.action == "rfq_awarded").one()
        assert entry.entity_id == rfq.id
        assert entry.details["order_id"] == order.id
        assert len(entry.details["participants"]) == 3


class TestAwardGuards:
    """Everything that must fail without side effects."""

    def test_second_award_fails(self, db, org, scenario):
        rfq, quotes = scenario
        service = AwardService(db, org.id)
        service.award_quote(rfq.id, quotes["A"].id)

        with pytest.raises(AlreadyAwarded):
            service.award_quote(rfq.id, quotes["B"].id)
        assert db.query(Order).count() == 1

    def test_quote_of_another_rfq_not_found(self, db, org, scenario, make_rfq, submit, suppliers):
        rfq, _ = scenario
        other_quote = submit(make_rfq(), suppliers[0], 500, 2)
        with pytest.raises(NotFound):
            AwardService(db, org.id).award_quote(rfq.id, other_quote.id)

    def test_withdrawn_quote_cannot_win(self, db, org, scenario):
        rfq, quotes = scenario
        QuoteIntakeService(db, org.id).withdraw_quote(quotes["A"].id)
        with pytest.raises(InvalidStateTransition):
            AwardService(db, org.id).award_quote(rfq.id, quotes["A"].id)

    def test_elapsed_quote_marked_expired(self, db, org, scenario):
        rfq, quotes = scenario
        quotes["A"].valid_until = utcnow() - timedelta(seconds=1)
        db.commit()

        with pytest.raises(QuoteExpired):
            AwardService(db, org.id).award_quote(rfq.id, quotes["A"].id)
        db.refresh(quotes["A"])
        assert quotes["A"].status == QuoteStatus.EXPIRED.value
        assert db.query(Order).count() == 0

    def test_expired_rfq(self, db, org, scenario):
        rfq, quotes = scenario
        rfq.deadline = utcnow() - timedelta(seconds=1)
        db.commit()
        with pytest.raises(RfqExpired):
            AwardService(db, org.id).award_quote(rfq.id, quotes["A"].id)
        assert db.query(Order).count() == 0

    def test_cancelled_rfq(self, db, org, scenario):
        rfq, quotes = scenario
        RFQPublisher(db, org.id).cancel_rfq(rfq.id)
        with pytest.raises(InvalidStateTransition):
            AwardService(db, org.id).award_quote(rfq.id, quotes["A"].id)

    def test_winning_price_is_frozen(self, db, org, scenario):
        rfq, quotes = scenario
        AwardService(db, org.id).award_quote(rfq.id, quotes["A"].id)

        quotes["A"].total_price = 1.0
        with pytest.raises(ImmutableQuoteError):
            db.flush()
        db.rollback()


class TestCounters:
    """Supplier and customer statistics move by exactly one award."""

    def test_supplier_and_customer_counters(self, db, org, customer, suppliers, scenario):
        rfq, quotes = scenario
        a, b, c = suppliers
        AwardService(db, org.id).award_quote(rfq.id, quotes["A"].id)

        for row in (a, b, c, customer):
            db.refresh(row)

        assert a.total_orders == 1
        assert a.won_quotes == 1
        assert a.total_quotes == 1
        assert a.win_rate == 100.0
        assert a.total_revenue == 1000.0
        assert a.last_activity_at is not None
        assert b.total_orders == 0
        assert b.total_quotes == 1
        assert b.won_quotes == 0
        assert b.win_rate == 0.0
        assert c.total_quotes == 1
        assert customer.total_orders == 1
        assert customer.total_spend == 1000.0

    def test_failed_award_leaves_counters(self, db, org, suppliers, scenario):
        rfq, quotes = scenario
        service = AwardService(db, org.id)
        service.award_quote(rfq.id, quotes["A"].id)
        with pytest.raises(AlreadyAwarded):
            service.award_quote(rfq.id, quotes["B"].id)

        db.refresh(suppliers[0])
        db.refresh(suppliers[1])
        assert suppliers[0].total_orders == 1
        assert suppliers[1].total_orders == 0
        assert suppliers[1].total_quotes == 1

    def test_win_rate_over_two_rfqs(self, db, org, suppliers, make_rfq, submit):
        a, b, _ = suppliers
        service = AwardService(db, org.id)

        first = make_rfq()
        qa = submit(first, a, 1000, 5)
        submit(first, b, 1100, 5)
        service.award_quote(first.id, qa.id)

        second = make_rfq()
        submit(second, a, 1000, 5)
        qb = submit(second, b, 900, 5)
        service.award_quote(second.id, qb.id)

        db.refresh(a)
        db.refresh(b)
        assert a.total_quotes == 2 and a.won_quotes == 1
        assert a.win_rate == pytest.approx(50.0)
        assert b.win_rate == pytest.approx(50.0)
        assert a.total_orders == 1 and b.total_orders == 1


class TestConcurrentAward:
    """Two sessions racing to award the same RFQ."""

    def test_stale_session_loses(self, tmp_path):
        engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
        Base.metadata.create_all(bind=engine)
        factory = build_session_factory(engine)

        with factory() as setup:
            org = Organization(name="Race Tenant", slug="race", settings={})
            setup.add(org)
            setup.flush()
            customer = Customer(organization_id=org.id, company_name="Race Customer")
            alpha = Supplier(organization_id=org.id, company_name="Alpha")
            charlie = Supplier(organization_id=org.id, company_name="Charlie")
            setup.add_all([customer, alpha, charlie])
            setup.commit()

            intake = RequestIntakeService(setup, org.id)
            request = intake.create_request(customer.id, {
                "category": "Road freight",
                "description": "Two pallets",
                "origin": "Hamburg",
                "destination": "Vienna",
            })
            intake.submit_request(request.id)
            intake.approve_request(request.id)
            rfq = RFQPublisher(setup, org.id).publish_rfq(request.id, utcnow() + timedelta(days=7))
            quotes = QuoteIntakeService(setup, org.id)
            valid_until = utcnow() + timedelta(days=30)
            qa = quotes.submit_quote(rfq.id, alpha.id, 1000, 5, valid_until)
            qc = quotes.submit_quote(rfq.id, charlie.id, 900, 7, valid_until)
            org_id, rfq_id, qa_id, qc_id, charlie_id = org.id, rfq.id, qa.id, qc.id, charlie.id

        first, second = factory(), factory()
        try:
            # Both sessions observe the RFQ and its quotes as open before either awards
            for session in (first, second):
                RFQPublisher(session, org_id).get_rfq(rfq_id)
                session.query(Quote).filter(Quote.rfq_id == rfq_id).all()

            AwardService(first, org_id).award_quote(rfq_id, qa_id)
            with pytest.raises(AlreadyAwarded):
                AwardService(second, org_id).award_quote(rfq_id, qc_id)

            second.expire_all()
            assert second.query(Order).count() == 1
            assert second.query(Quote).filter(Quote.is_winning.is_(True)).count() == 1
            assert second.query(RFQ.winning_quote_id).filter(RFQ.id == rfq_id).scalar() == qa_id
            assert second.get(Supplier, charlie_id).total_orders == 0
        finally:
            first.close()
            second.close()
            engine.dispose()
