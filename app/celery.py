from celery import Celery

# Celery app driving the scheduled notification dispatcher
celery = Celery("scheduled_notifications")

# Configuration lives in app.config.celeryconfig (broker, beat schedule, retries)
celery.config_from_object("app.config.celeryconfig")
