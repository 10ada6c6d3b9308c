import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"

wsgi_app = os.environ.get("GUNICORN_APP", "bookingcurve.api:app")

# One worker shares a single copy of the prepared datasets and forecast store.
workers = int(os.environ.get("WEB_CONCURRENCY", "1") or 1)
worker_class = os.environ.get("GUNICORN_WORKER_CLASS", "uvicorn.workers.UvicornWorker")

# On-demand refits run several Prophet fits per split.
timeout = int(os.environ.get("GUNICORN_TIMEOUT", "300") or 300)
graceful_timeout = int(os.environ.get("GUNICORN_GRACEFUL_TIMEOUT", "30") or 30)
