"""
Background worker using RQ (Redis Queue).
"""
from redis import Redis
from rq import Worker, Queue

from procura.core.config import settings
from procura.core.logging import setup_logging, get_logger
from procura.workers.jobs import setup_scheduled_jobs

setup_logging()
logger = get_logger(__name__)


def run_worker(schedule: bool = True):
    """Start the RQ worker."""
    redis_conn = Redis.from_url(settings.REDIS_URL)

    if schedule:
        setup_scheduled_jobs()

    worker = Worker(
        queues=[
            Queue("high", connection=redis_conn),
            Queue("default", connection=redis_conn),
            Queue("low", connection=redis_conn),
        ],
        connection=redis_conn,
        name="procura-worker",
    )
    logger.info("Starting Procura worker...")
    worker.work()


if __name__ == "__main__":
    run_worker()
