from .auth import create_access_token, get_current_admin

__all__ = ["create_access_token", "get_current_admin"]
