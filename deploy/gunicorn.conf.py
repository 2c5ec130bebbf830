import multiprocessing
import os

bind = os.getenv("BIND", "127.0.0.1:8000")
# Every worker starts the scheduler; the job lock keeps detection single-run only
# when CACHE_BACKEND=redis is shared across workers.
workers = int(os.getenv("WEB_CONCURRENCY", (multiprocessing.cpu_count() * 2) + 1))
worker_class = "uvicorn.workers.UvicornWorker"
wsgi_app = "attendance_engine.main:app"
timeout = 60
graceful_timeout = 30
keepalive = 5
loglevel = "info"
accesslog = "-"
errorlog = "-"
