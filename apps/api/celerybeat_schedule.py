"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Weekly trainer digest - every Monday at 8 AM UTC
    'send-trainer-digests': {
        'task': 'tasks.send_all_trainer_digests',
        'schedule': crontab(hour=8, minute=0, day_of_week=1),  # Monday
    },
}
