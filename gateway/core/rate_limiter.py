# core/rate_limiter.py
"""
Coarse per-IP request limit for the read endpoints. Per-caller admission
control on webhooks and job submission is the token bucket in
services/rate_limiter.py.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings

limiter = Limiter(key_func=get_remote_address)
limit_param = f"{settings.RATE_LIMIT_MIN}/minute"
