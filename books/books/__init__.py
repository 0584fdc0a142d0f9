# Celery instance is defined in books/celery.py
# It points the celery_app object at the Django settings
from .celery import celery_app

# 'from books import *' only exports celery_app
__all__ = ("celery_app",)

""" When you run Celery workers, "celery -A books worker -l info"
    -A books imports books/__init__.py, which exposes celery_app.
    "celery -A books beat" drives the recurring invoice tick. """
