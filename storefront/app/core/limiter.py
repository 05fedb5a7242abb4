"""
Shared slowapi limiter. Counters live in Redis so limits hold across every
process instance; tests point RATE_LIMIT_STORAGE_URI at memory://.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from storefront.app.core.settings import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=get_settings().rate_limit_storage_uri,
)
