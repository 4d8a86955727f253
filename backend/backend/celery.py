import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.settings')

app = Celery('backend')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Task routing configuration
app.conf.task_routes = {
    "dunning.tasks.process_due_dunning_retries": {"queue": "dunning"},
    "dunning.tasks.execute_dunning_retry": {"queue": "dunning"},
    "dunning.tasks.cancel_expired_dunning_grace_periods": {"queue": "dunning"},

    # Default queue
    '*': {'queue': 'default'},
}

app.conf.task_default_queue = 'default'

app.conf.update(
    # Serialization settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone settings
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_track_started=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Retry settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Queue settings
    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'dunning': {
            'exchange': 'dunning',
            'routing_key': 'dunning',
        },
    },

    task_default_priority=5,
    task_ignore_result=False,
)

app.conf.task_annotations = {
    'dunning.tasks.execute_dunning_retry': {
        'rate_limit': '60/m',
        'time_limit': 300,
        'soft_time_limit': 240,
    },
}

# Celery Beat schedule configuration
app.conf.beat_schedule = {
    "process_due_dunning_retries_hourly": {
        "task": "dunning.tasks.process_due_dunning_retries",
        "schedule": crontab(minute=0),
        "options": {"queue": "dunning", "priority": 8},
    },
    "cancel_expired_dunning_grace_periods_daily": {
        "task": "dunning.tasks.cancel_expired_dunning_grace_periods",
        "schedule": crontab(hour=3, minute=30),
        "options": {"queue": "dunning"},
    },
}

