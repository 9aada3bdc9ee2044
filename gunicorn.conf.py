"""
Gunicorn configuration for the draft image service

Every setting reads an environment variable and falls back to the DEFAULT
noted beside it. Unset the variable to get that default back.

Run:
  gunicorn main:app --config gunicorn.conf.py

Workers share one uploads/ and data/ tree. Per-item locks are rows under
data/locks, so several workers (or hosts on shared storage) serialize uploads
for the same draft without any in-memory state.
"""

import os
from pathlib import Path


# --- Draft storage ---
# Resolved once here and handed to each worker, so they all agree on it.
# DEFAULT: ./uploads and ./data
UPLOADS_DIR = Path(os.getenv("DRAFTS_UPLOADS_DIR", "uploads")).resolve()
DATA_DIR = Path(os.getenv("DRAFTS_DATA_DIR", "data")).resolve()
raw_env = [
    f"DRAFTS_UPLOADS_DIR={UPLOADS_DIR}",
    f"DRAFTS_DATA_DIR={DATA_DIR}",
]


def on_starting(server):
    for path in (UPLOADS_DIR / "drafts", UPLOADS_DIR / "temp", DATA_DIR / "drafts", DATA_DIR / "locks"):
        path.mkdir(parents=True, exist_ok=True)
    server.log.info("Draft storage: uploads=%s data=%s", UPLOADS_DIR, DATA_DIR)


# --- Logs ---
# DEFAULT: ./logs (GUNICORN_LOGDIR)
LOG_DIR = Path(os.getenv("GUNICORN_LOGDIR", "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)

errorlog = os.getenv("GUNICORN_ERRORLOG", str(LOG_DIR / "gunicorn_error.log"))
accesslog = os.getenv("GUNICORN_ACCESSLOG", str(LOG_DIR / "gunicorn_access.log"))
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")
# DEFAULT: worker stdout/stderr (the app's console log) goes to the error log
capture_output = os.getenv("GUNICORN_CAPTURE_OUTPUT", "true").lower() == "true"


# --- Binding / workers ---
# DEFAULT: 0.0.0.0:8000
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")

# DEFAULT: 4 uvicorn workers (WEB_CONCURRENCY)
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
worker_class = os.getenv("GUNICORN_WORKER_CLASS", "uvicorn.workers.UvicornWorker")

# DEFAULT: no preload; each worker runs its own startup and only the one
# holding data/.startup.lock performs draft migration and lock cleanup
preload_app = os.getenv("GUNICORN_PRELOAD", "false").lower() == "true"


# --- Timeouts ---
# DEFAULT: 120s; must exceed the longest lock wait
# (DRAFTS_LOCK_RETRY_DELAY x DRAFTS_LOCK_MAX_RETRIES) plus a batch upload
timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))

# DEFAULT: 35s, longer than the 30s lock lifetime so in-flight uploads can
# release their item locks before the worker is killed
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "35"))

keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))
