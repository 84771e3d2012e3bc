import os
from config import HOST, LOG_LEVEL, PORT

bind = os.getenv("AACFORMS_GUNICORN_BIND", f"{HOST}:{PORT}")
workers = int(os.getenv("AACFORMS_GUNICORN_WORKERS", "2"))
threads = int(os.getenv("AACFORMS_GUNICORN_THREADS", "4"))
timeout = int(os.getenv("AACFORMS_GUNICORN_TIMEOUT", "60"))
loglevel = LOG_LEVEL.lower()
accesslog = "-"
errorlog = "-"
