# attend75/engine/api/utilities/limiter.py

from slowapi import Limiter
from slowapi.util import get_remote_address

from ...config.config import settings

# One engine instance serves one user, so the client address is a good enough key.
limiter = Limiter(key_func=get_remote_address, storage_uri=settings.RATE_LIMITER_STORAGE_URI)
