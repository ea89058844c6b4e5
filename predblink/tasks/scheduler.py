# predblink/tasks/scheduler.py
from celery import Celery, signals
from celery.schedules import crontab
from loguru import logger

from predblink.log_config import setup_logging
from settings import Settings, settings

INDEX_TASK = 'blockchain_indexer.run_predblink_indexer'


def build_scheduler(app_settings: Settings) -> Celery:
    """Celery app with a beat entry firing one indexing pass per interval."""
    interval = app_settings.INDEXER_INTERVAL_MINUTES
    if interval <= 0 or interval > 60:
        raise ValueError(f"INDEXER_INTERVAL_MINUTES must be between 1 and 60, got {interval}")

    app = Celery('predblink', broker=app_settings.REDIS_URL, include=['predblink.tasks.blockchain_indexer'])

    app.conf.beat_schedule = {
        'index-predblink-events': {
            'task': INDEX_TASK,
            'schedule': crontab(minute=f'*/{interval}'),
        },
    }
    app.conf.update(
        timezone='UTC',
        broker_connection_retry_on_startup=True,
        task_soft_time_limit=120,
        task_time_limit=180,
        # passes must not overlap: one worker process, one task in flight
        worker_concurrency=1,
        worker_prefetch_multiplier=1,
        task_acks_late=True,
        task_routes={INDEX_TASK: {'queue': 'indexer'}},
    )
    return app


@signals.setup_logging.connect
def _configure_worker_logging(**kwargs):
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE_PATH)


scheduler_app = build_scheduler(settings)


if __name__ == '__main__':
    logger.info("Starting Celery worker with beat for PredBlink indexer")
    logger.info(f"Indexing interval: every {settings.INDEXER_INTERVAL_MINUTES} minutes")

    scheduler_app.start(argv=[
        'worker',
        '-B',
        '--loglevel=info',
        '--queues=indexer'
    ])
