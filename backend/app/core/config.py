"""
Module-level configuration values derived from settings.
New code should use backend.app.core.settings.get_settings() instead.
"""
from dotenv import load_dotenv

# Load variables from .env before settings are read
load_dotenv()

from backend.app.core.settings import get_settings  # noqa: E402

_settings = get_settings()

DB_URL = _settings.db_url
REDIS_HOST = _settings.REDIS_HOST
REDIS_PORT = _settings.REDIS_PORT
REDIS_DB = _settings.REDIS_DB
