"""Celery tasks; importing the package registers them with the app."""
from verify_service.tasks import cleanup

__all__ = ["cleanup"]
