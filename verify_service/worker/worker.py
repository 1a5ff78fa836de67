"""
Celery worker with the embedded beat scheduler that fires the token sweep:
    celery -A verify_service.celery_app worker -B -l info
or
    python -m verify_service.worker.worker
"""
from verify_service.celery_app import app
import verify_service.tasks  # noqa: F401

if __name__ == "__main__":
    app.worker_main(["worker", "--beat", "--loglevel=info"])
