import logging
from datetime import datetime, timedelta
from typing import Optional

import requests

from iiko_errors import AuthError

logger = logging.getLogger(__name__)

SESSION_LIFETIME_SECONDS = 900  # iiko drops idle keys after ~15 minutes


class IikoSessionManager:
    """Obtains and refreshes the iiko Server API session key"""

    def __init__(self, base_url: str, login: str, password: str,
                 lifetime_seconds: int = SESSION_LIFETIME_SECONDS,
                 auth_timeout: int = 10, logout_timeout: int = 5):
        self.base_url = base_url.rstrip("/")
        self.login = login
        self.password = password
        self.lifetime = timedelta(seconds=lifetime_seconds)
        self.auth_timeout = auth_timeout
        self.logout_timeout = logout_timeout
        self.session_key: Optional[str] = None
        self.created_at: Optional[datetime] = None

    def authenticate(self) -> str:
        """GET /api/auth?login=&pass= ; the body is the bare session key"""
        logger.info(f"🔄 Authenticating with iiko as {self.login or '<empty login>'}...")

        try:
            response = requests.get(
                f"{self.base_url}/api/auth",
                params={"login": self.login, "pass": self.password},
                timeout=self.auth_timeout,
            )
        except requests.exceptions.RequestException as e:
            # the exception text carries the full URL with the password
            logger.error(f"❌ iiko auth request failed: {type(e).__name__}")
            raise AuthError(f"iiko auth failed: {type(e).__name__}") from None

        if not 200 <= response.status_code < 300:
            logger.error(f"❌ iiko auth rejected: status {response.status_code}, body {response.text[:200]}")
            raise AuthError(f"iiko auth failed: HTTP {response.status_code}")

        key = (response.text or "").strip().strip('"')
        if not key or any(ch.isspace() for ch in key) or key.startswith("<"):
            logger.error(f"❌ Malformed iiko auth response: {response.text[:200]}")
            raise AuthError("iiko auth failed: malformed session key")

        # concurrent callers may race here; the last key written wins
        self.session_key = key
        self.created_at = datetime.now()
        logger.info("✅ iiko session key received")
        return key

    def is_valid(self) -> bool:
        if not self.session_key or not self.created_at:
            return False
        return datetime.now() - self.created_at < self.lifetime

    def ensure_valid(self) -> str:
        if not self.is_valid():
            return self.authenticate()
        return self.session_key

    def invalidate(self):
        self.session_key = None
        self.created_at = None

    def logout(self):
        """Close the session on the server side; failures only get logged."""
        if not self.session_key:
            return

        try:
            requests.get(
                f"{self.base_url}/api/logout",
                params={"key": self.session_key},
                timeout=self.logout_timeout,
            )
            logger.info("iiko session closed")
        except requests.exceptions.RequestException as e:
            logger.warning(f"⚠️ Could not close iiko session: {type(e).__name__}")
        finally:
            self.invalidate()
