from .proxy import proxy_router
from .resolver import resolver_router

__all__ = ["proxy_router", "resolver_router"]
