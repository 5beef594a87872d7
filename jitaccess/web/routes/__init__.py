from .operations import operations_router
from .requests import requests_router
from .roles import roles_router
from .sync import sync_router

__all__ = ["operations_router", "requests_router", "roles_router", "sync_router"]
