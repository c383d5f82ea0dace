"""
Background job definitions.
"""
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from redis import Redis
from rq import Queue
from rq_scheduler import Scheduler

from procura.core.clock import utcnow
from procura.core.config import settings
from procura.core.logging import get_logger
from procura.db.session import SessionFactory, build_engine, build_session_factory, get_db_context

logger = get_logger(__name__)


def get_queue(name: str = "default") -> Queue:
    """Get RQ queue."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Queue(name, connection=redis_conn)


def get_scheduler() -> Scheduler:
    """Get RQ scheduler."""
    redis_conn = Redis.from_url(settings.REDIS_URL)
    return Scheduler(connection=redis_conn)


@lru_cache
def worker_session_factory() -> SessionFactory:
    """One engine and pool per worker process."""
    return build_session_factory(build_engine())


# ============= JOB FUNCTIONS =============

def expire_overdue_rfqs_job(session_factory: Optional[SessionFactory] = None) -> dict:
    """Persist EXPIRED for RFQs and quotes whose deadlines have passed."""
    from procura.services.rfq_publisher import expire_overdue_rfqs

    with get_db_context(session_factory or worker_session_factory()) as db:
        result = expire_overdue_rfqs(db)
    logger.info(f"Expiry sweep finished: {result}")
    return result


def enrich_quote_job(
    org_id: int,
    quote_id: int,
    session_factory: Optional[SessionFactory] = None,
    advisor=None,
) -> bool:
    """Deferred advisory enrichment for one scored quote."""
    from procura.services.scoring import ScoringEngine

    logger.info(f"Enriching quote {quote_id} for org {org_id}")
    with get_db_context(session_factory or worker_session_factory()) as db:
        advisory = ScoringEngine(db, org_id, advisor=advisor).enrich_quote(quote_id)
    return advisory is not None


# ============= QUEUE HELPERS =============

def enqueue_quote_enrichment(org_id: int, quote_id: int):
    """Queue advisory enrichment; never on the scoring or award path."""
    queue = get_queue("low")
    return queue.enqueue(enrich_quote_job, org_id, quote_id)


def enqueue_expiry_sweep():
    """Queue an immediate expiry sweep."""
    queue = get_queue("default")
    return queue.enqueue(expire_overdue_rfqs_job)


def setup_scheduled_jobs():
    """Setup scheduled jobs."""
    scheduler = get_scheduler()

    # Eager expiry sweep; reads already expire lazily in between
    scheduler.schedule(
        scheduled_time=utcnow() + timedelta(seconds=10),
        func=expire_overdue_rfqs_job,
        interval=settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
        repeat=None,
        id="expire-overdue-rfqs",
    )

    logger.info("Scheduled jobs configured")
