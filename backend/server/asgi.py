"""
ASGI entry point for `uvicorn server.asgi:app`.

Environment (and .env) is read once at import; a bad configuration
fails the import rather than the first request.
"""

from dotenv import load_dotenv

load_dotenv()

# pylint: disable=wrong-import-position
from config import AppConfig
from server.app import create_app

config = AppConfig.load_from_env()
app = create_app(config)
