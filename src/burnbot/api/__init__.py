"""Status API: read-only record views and manual triggers."""

from burnbot.api.app import create_api_app

__all__ = ["create_api_app"]
