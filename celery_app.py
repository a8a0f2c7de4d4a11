from borrowpal import create_app
from borrowpal.celery_app import create_celery_app

# Worker entrypoint: celery -A celery_app:celery worker
flask_app = create_app()
celery = create_celery_app(flask_app)
