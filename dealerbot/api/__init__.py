"""HTTP trigger surface served with FastAPI."""

from dealerbot.api.app import create_app

__all__ = ["create_app"]
