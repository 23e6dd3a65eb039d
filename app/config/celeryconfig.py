from celery.schedules import crontab

from .settings import settings

_redis_url = (
    f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:"
    f"{settings.REDIS_PORT}/{settings.REDIS_DB}"
)

broker_url = _redis_url
result_backend = _redis_url
result_expires = 3600

include = ["app.tasks"]

timezone = "UTC"
enable_utc = True

task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# A run that outlives the claim timeout has its records recovered by the next
# tick, so the hard limit stays below it
task_time_limit = max(120, min(10 * 60, settings.DISPATCH_CLAIM_TIMEOUT_SECONDS - 60))
task_soft_time_limit = task_time_limit - 60
task_track_started = True

# Ticks are idempotent
task_acks_late = True
task_reject_on_worker_lost = True
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

beat_schedule = {
    "scheduled-notification-dispatcher": {
        "task": "app.tasks.cron.scheduled_notification_dispatcher.dispatch_scheduled_notifications_task",
        "schedule": crontab(),
        "args": ("scheduled_notification_dispatcher_cron",),
        # A tick nobody picked up within a minute is superseded by the next one
        "options": {"expires": 60},
    },
}

task_default_queue = "notifications"
beat_schedule_filename = "tmp/celerybeat-schedule"
