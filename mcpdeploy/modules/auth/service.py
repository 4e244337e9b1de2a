import hashlib
import logging
import time
from supabase import Client
from fastapi import HTTPException
from typing import Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)

AUTH_CACHE_TTL_SEC = 60
AUTH_CACHE_MAX_SIZE = 500


class _TokenCache:
    """sha256(token) -> (user, expiry). Expired entries are dropped when the cache fills."""

    def __init__(self, ttl: float, max_size: int):
        self.ttl = ttl
        self.max_size = max_size
        self._entries: Dict[str, Tuple[Dict[str, Any], float]] = {}

    @staticmethod
    def key(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def get(self, token: str, now: float) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(self.key(token))
        if entry is None:
            return None
        user, expiry = entry
        if now >= expiry:
            self._entries.pop(self.key(token), None)
            return None
        return user

    def put(self, token: str, user: Dict[str, Any], now: float):
        if len(self._entries) >= self.max_size:
            self._entries = {k: v for k, v in self._entries.items() if v[1] > now}
        if len(self._entries) < self.max_size:
            self._entries[self.key(token)] = (user, now + self.ttl)

    def clear(self):
        self._entries.clear()


_token_cache = _TokenCache(AUTH_CACHE_TTL_SEC, AUTH_CACHE_MAX_SIZE)


def clear_auth_cache():
    _token_cache.clear()


class AuthService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def get_current_user(self, token: str, now: Optional[float] = None) -> Dict[str, Any]:
        """Resolve a Supabase access token to the user dict used by route dependencies."""
        now = time.monotonic() if now is None else now
        cached = _token_cache.get(token, now)
        if cached is not None:
            return cached

        try:
            user_response = self.supabase.auth.get_user(jwt=token)
        except Exception as e:
            logger.info(f"Token rejected by Supabase Auth: {e}")
            message = str(e).lower()
            if "jwt" in message or "expired" in message or "invalid" in message:
                raise HTTPException(status_code=401, detail="Invalid or expired token")
            raise HTTPException(status_code=401, detail="Authentication failed")

        if not user_response or not user_response.user:
            raise HTTPException(status_code=401, detail="Invalid or expired token")

        user = user_response.user
        user_data = {
            "id": user.id,
            "email": user.email,
            "user_metadata": user.user_metadata or {},
            "app_metadata": user.app_metadata or {},
        }
        _token_cache.put(token, user_data, now)
        return user_data
