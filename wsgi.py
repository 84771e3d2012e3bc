import config
from app import app


# Fail fast under Gunicorn/Werkzeug when the backend is not configured.
config.validate_backend_settings()
