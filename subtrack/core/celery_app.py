from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from subtrack.core.config import get_settings
from subtrack.lifecycle.dispatch import EventNotificationDispatcher
from subtrack.lifecycle.repository import SqlAlchemySubscriptionStore
from subtrack.lifecycle.service import RenewalProcessor
from subtrack.logging import configure_logging

settings = get_settings()

celery_app = Celery("subtrack", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.timezone = settings.timezone
celery_app.conf.beat_schedule = {
    "renewals-daily": {
        "task": "subtrack.tasks.run_renewals",
        "schedule": crontab(hour=settings.renewal_run_hour, minute=0),
    },
}


@setup_logging.connect
def _configure_worker_logging(**kwargs: object) -> None:
    # Connecting here stops Celery from installing its own root handlers.
    configure_logging()


@celery_app.task(name="subtrack.tasks.run_renewals")
def run_renewals_task() -> dict[str, object]:
    processor = RenewalProcessor(store=SqlAlchemySubscriptionStore(), dispatcher=EventNotificationDispatcher())
    return processor.run().model_dump(mode="json")
