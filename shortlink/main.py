"""ASGI entry point: ``uvicorn shortlink.main:app --host 0.0.0.0 --port 8000``."""

__all__ = ["app"]

from shortlink.app import create_app

app = create_app()
