"""
In-memory fixed-window rate limiter for checkout endpoints.
Counters live per process; deployments with several workers get one window each.
"""
import time
from typing import Dict, Tuple

from fastapi import Depends, HTTPException

from app.core.auth import get_current_user

# {"<scope>:<user>": (window_start, count)}
_rate_limit_store: Dict[str, Tuple[float, int]] = {}


def rate_limit(scope: str, requests: int, window: int):
    """
    Per-user limiter dependency.
    Example: Depends(rate_limit("payment_initiate", requests=5, window=60))
    """
    def limiter(user: dict = Depends(get_current_user)):
        key = f"{scope}:{user['sub']}"
        now = time.time()

        if key not in _rate_limit_store:
            _rate_limit_store[key] = (now, 1)
            return True

        window_start, count = _rate_limit_store[key]

        # Reset window if expired
        if now - window_start > window:
            _rate_limit_store[key] = (now, 1)
            return True

        if count >= requests:
            raise HTTPException(
                status_code=429,
                detail=f"Too many attempts. Try again in {int(window - (now - window_start))} seconds."
            )

        _rate_limit_store[key] = (window_start, count + 1)
        return True

    return limiter


def reset_rate_limits():
    _rate_limit_store.clear()
