"""
API route modules.
"""
from app.api.routes import webhooks, subscriptions, usage, admin

__all__ = ["webhooks", "subscriptions", "usage", "admin"]
