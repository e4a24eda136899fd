# API routes
from ascent_access.api.routes import access, webhooks_clerk

__all__ = ["access", "webhooks_clerk"]
