from slowapi import Limiter
from slowapi.util import get_remote_address

from src.rollout.core.config import settings

# Client IP keyed limiter; mutating routes opt in with @limiter.limit(MUTATION_LIMIT)
limiter = Limiter(key_func=get_remote_address, headers_enabled=False)

MUTATION_LIMIT = settings.RATE_LIMIT_MUTATIONS
