from celery import Celery

from seat_inventory.config import settings


celery_app = Celery(
    "seat_inventory_tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["seat_inventory.jobs.tasks"],
)

celery_app.conf.update(task_track_started=True)

celery_app.conf.beat_schedule = {
    "reap-expired-seat-holds": {
        "task": "seat_inventory.jobs.tasks.reap_expired_seat_holds_task",
        "schedule": float(settings.REAPER_INTERVAL_SECONDS),
        # a late sweep is superseded by the next one
        "options": {"expires": float(settings.REAPER_INTERVAL_SECONDS)},
    },
}
