import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'courseai.settings')

app = Celery('courseai')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Billing work stays on its own queue so webhook replays never wait behind maintenance jobs
app.conf.task_routes = {
    "billing.tasks.process_webhook_payload_async": {"queue": "billing"},
    "billing.tasks.fix_user_consistency_task": {"queue": "billing"},
    "billing.tasks.sweep_subscription_consistency": {"queue": "maintenance"},
    "billing.tasks.expire_lapsed_subscriptions": {"queue": "maintenance"},
    "billing.tasks.cleanup_idempotency_guard": {"queue": "maintenance"},

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

    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'billing': {
            'exchange': 'billing',
            'routing_key': 'billing',
        },
        'maintenance': {
            'exchange': 'maintenance',
            'routing_key': 'maintenance',
        },
    },

    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
)

app.conf.task_annotations = {
    'billing.tasks.sweep_subscription_consistency': {
        'rate_limit': '1/h',
        'time_limit': 1800,
        'soft_time_limit': 1500,
    },
}

app.conf.beat_schedule = {
    "sweep_subscription_consistency_hourly": {
        "task": "billing.tasks.sweep_subscription_consistency",
        "schedule": crontab(minute=5),
        "options": {"queue": "maintenance"},
    },
    "expire_lapsed_subscriptions_15min": {
        "task": "billing.tasks.expire_lapsed_subscriptions",
        "schedule": crontab(minute="*/15"),
        "options": {"queue": "maintenance"},
    },
    "cleanup_idempotency_guard_5min": {
        "task": "billing.tasks.cleanup_idempotency_guard",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "maintenance"},
    },
}


# System health check task
@app.task(bind=True)
def health_check(self):
    """System health check task"""
    from django.db import connection

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")

        return {
            'status': 'healthy',
            'timestamp': app.now(),
            'worker_id': self.request.id,
        }
    except Exception as e:
        return {
            'status': 'unhealthy',
            'error': str(e),
            'timestamp': app.now(),
        }
