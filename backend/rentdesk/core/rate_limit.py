"""Shared slowapi limiter: per-IP default limits on the API, provider webhook exempt."""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])
