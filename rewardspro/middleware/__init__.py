"""
Request middleware.
"""
from .shop_auth import require_shop_auth, get_shop_from_request
