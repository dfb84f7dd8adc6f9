# SessionGuard API
from sessionguard.api import auth, health
from sessionguard.api.router import api_router

__all__ = ["api_router", "auth", "health"]
