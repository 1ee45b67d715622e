"""
Background worker package
"""
from amazonia.worker.celery_app import celery_app

__all__ = ["celery_app"]
