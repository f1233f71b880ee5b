"""
Rate limiter shared across the VotePay application.
"""

import os

from slowapi import Limiter
from slowapi.util import get_remote_address

INITIATE_RATE_LIMIT = os.getenv("INITIATE_RATE_LIMIT", "10/minute")
STATUS_RATE_LIMIT = os.getenv("STATUS_RATE_LIMIT", "60/minute")
MONITORING_RATE_LIMIT = os.getenv("MONITORING_RATE_LIMIT", "10/minute")

limiter = Limiter(key_func=get_remote_address, default_limits=["100 per minute"])
