"""
Specialized B2B portal authentication (SAML bridge -> OCC bearer token):
- Step 1: POST {username, password} JSON with Api-Key header to the identity bridge;
  the response is an HTML form carrying the SAML assertion in an input value.
- Step 2: POST grant_type=saml_credentials + saml_response to /ccstore/v1/login → access_token, expires_in.
The token is cached process-wide and reused while elapsed < expires_in - safety margin.
"""
import logging
import re
import time
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.services.credentials import B2B_PROVIDER, resolve_login
from backoffice.services.exceptions import AssertionParseError, B2BAuthError, NotConfiguredError
from backoffice.services.http_client import post_no_retry
from backoffice.services.token_cache import ExpiringCache

logger = logging.getLogger(__name__)

ASSERTION_VALUE_RE = re.compile(r'value="([^"]+)"')
TOKEN_PATH = "/ccstore/v1/login"
SAML_GRANT_TYPE = "saml_credentials"
DEFAULT_TOKEN_LIFETIME_SEC = 3600


def parse_assertion(html: str) -> str:
    """Extract the SAML assertion from the identity bridge HTML form."""
    match = ASSERTION_VALUE_RE.search(html or "")
    if not match:
        raise AssertionParseError("Failed to extract SAML response")
    return match.group(1)


class B2BAuthBridge:
    """
    Produces a currently-valid portal bearer token with minimal round-trips.
    Concurrent callers share one cache slot; renewal is single-flight.
    """

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        saml_url: Optional[str] = None,
        saml_api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        safety_margin: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 20.0,
    ):
        self.username = (username if username is not None else settings.B2B_USERNAME or "").strip()
        self.password = password if password is not None else settings.B2B_PASSWORD or ""
        self.saml_url = saml_url or settings.B2B_SAML_URL
        self.saml_api_key = saml_api_key if saml_api_key is not None else settings.B2B_SAML_API_KEY
        self.base_url = (base_url or settings.B2B_BASE_URL).rstrip("/")
        margin = safety_margin if safety_margin is not None else settings.B2B_TOKEN_SAFETY_MARGIN_SEC
        self.transport = transport
        self.timeout = timeout
        self.cache: ExpiringCache[str] = ExpiringCache("B2B token", safety_margin=float(margin), clock=clock)

    def is_configured(self) -> bool:
        return bool(self.username and self.password)

    async def _get_saml_response(self) -> str:
        headers = {"Content-Type": "application/json"}
        if self.saml_api_key:
            headers["Api-Key"] = self.saml_api_key
        resp = await post_no_retry(
            self.saml_url,
            json={"username": self.username, "password": self.password},
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )
        if not resp.is_success:
            raise B2BAuthError(f"SAML login failed: {resp.status_code} - {resp.text[:500]}", resp.status_code, resp.text)
        return parse_assertion(resp.text)

    async def _exchange_for_token(self, saml_response: str) -> tuple[str, float]:
        resp = await post_no_retry(
            f"{self.base_url}{TOKEN_PATH}",
            data={"grant_type": SAML_GRANT_TYPE, "saml_response": saml_response},
            timeout=self.timeout,
            transport=self.transport,
        )
        if not resp.is_success:
            raise B2BAuthError(f"OCC login failed: {resp.status_code} - {resp.text[:500]}", resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise B2BAuthError("OCC login returned a non-JSON body", resp.status_code, resp.text) from e
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise B2BAuthError("OCC login response has no access_token", resp.status_code, resp.text)
        lifetime = float(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SEC)
        return token, lifetime

    async def _renew(self) -> tuple[str, float]:
        logger.info("[B2B] Authenticating (SAML -> OCC)")
        try:
            saml_response = await self._get_saml_response()
            token, lifetime = await self._exchange_for_token(saml_response)
        except httpx.HTTPError as e:
            raise B2BAuthError(f"B2B authentication request failed: {e}") from e
        logger.info("[B2B] Token obtained, expires_in=%ss", int(lifetime))
        return token, lifetime

    async def authenticate(self) -> str:
        """Return a usable bearer token; zero network calls on a cache hit."""
        if not self.is_configured():
            raise NotConfiguredError("B2B credentials not configured (SPEC_B2B_USERNAME, SPEC_B2B_PASSWORD)")
        return await self.cache.get_or_refresh(self._renew)

    def invalidate(self) -> None:
        self.cache.clear()


_auth_bridge: Optional[B2BAuthBridge] = None


def get_auth_bridge(db: Optional[Session] = None) -> B2BAuthBridge:
    """Process-wide auth bridge (single cached token slot)."""
    global _auth_bridge
    if _auth_bridge is None or not _auth_bridge.is_configured():
        username, password = resolve_login(db, B2B_PROVIDER, settings.B2B_USERNAME, settings.B2B_PASSWORD)
        _auth_bridge = B2BAuthBridge(username=username or "", password=password or "")
    return _auth_bridge
