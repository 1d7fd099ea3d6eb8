"""Provider token managers (refresh-before-expiry).

WHAT:
    One manager per OAuth provider. `get_valid_access_token()` returns a usable
    access token or None, refreshing it when it expires within five minutes.
    Managers also build the authorize URL and exchange the callback code for
    the admin connect flow.

WHY:
    Channel adapters must never deal with expiry, rotation or decryption
    themselves. None means "channel unavailable right now"; nothing here
    raises into the dispatch path.

PROVIDER DIFFERENCES:
    - Google Ads: reports expires_in, keeps the original refresh token.
    - Microsoft Advertising: reports expires_in, usually rotates the refresh
      token (persisted whenever the response carries one).
    - Salesforce: omits expires_in (one hour assumed), client id/secret are
      stored on the provider row, and the refresh response carries the
      instance_url to use for API calls.
    - Meta: long-lived page/system-user token, decrypt only.

KNOWN GAP:
    A provider that invalidates the stored refresh token without returning a
    new one is only noticed when the next refresh fails.

    Concurrent refreshes for one provider are not serialized; both calls
    succeed and the last write wins.

REFERENCES:
    - leadflow/services/token_service.py (persistence)
    - leadflow/services/channels/ (consumers)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from leadflow.models import ProviderConfig, ProviderEnum, utcnow
from leadflow.services.token_service import (
    get_decrypted_token,
    get_or_create_provider_config,
    get_provider_config,
    store_provider_tokens,
)
from leadflow.telemetry import capture_exception

logger = logging.getLogger(__name__)

REFRESH_SKEW = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def parse_expires_in(raw: Any) -> int:
    """Token lifetime in seconds; missing or malformed values fall back to one hour."""
    try:
        seconds = int(raw)
    except (TypeError, ValueError):
        if raw is not None:
            logger.warning("[TOKEN_MANAGER] Ignoring malformed expires_in %r", raw)
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    return seconds if seconds > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS


class OAuthError(Exception):
    """Base exception for token endpoint failures."""
    pass


class TokenRefreshError(OAuthError):
    """Refresh grant rejected or unusable."""
    pass


class TokenManager:
    """Base manager for an OAuth2 authorization-code + refresh-token provider.

    Args:
        session_factory: Callable returning a new SQLAlchemy Session. Every
            database touch uses its own short session so the manager can run
            inside detached dispatch tasks.
        settings: Application Settings.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        clock: Returns the current naive UTC time.
    """

    provider: ProviderEnum
    authorize_endpoint: str = ""
    token_endpoint: str = ""
    scopes: Tuple[str, ...] = ()
    extra_authorize_params: Dict[str, str] = {}
    send_scope_on_token_calls = False

    def __init__(
        self,
        session_factory: Callable,
        settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.transport = transport
        self.clock = clock

    # ------------------------------------------------------------------
    # Provider specifics
    # ------------------------------------------------------------------

    def client_credentials(self, config: Optional[ProviderConfig]) -> Tuple[Optional[str], Optional[str]]:
        raise NotImplementedError

    def redirect_uri(self) -> Optional[str]:
        raise NotImplementedError

    def get_token_endpoint(self) -> str:
        return self.token_endpoint

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    async def get_valid_access_token(self) -> Optional[str]:
        """Return a decrypted access token valid for at least five more minutes.

        Refreshes at most once per call. A failed refresh returns None and
        leaves the stored credentials untouched.
        """
        label = self.provider.value
        with self.session_factory() as db:
            config = get_provider_config(db, self.provider)
            if not config or not config.is_connected:
                logger.info("[TOKEN_MANAGER] %s not connected", label)
                return None
            if not config.is_enabled:
                logger.info("[TOKEN_MANAGER] %s disabled", label)
                return None

            access_token = get_decrypted_token(config, "access")
            expires_at = config.token_expires_at
            if access_token and expires_at and self.clock() + REFRESH_SKEW < expires_at:
                return access_token

            refresh_token = get_decrypted_token(config, "refresh")
            client_id, client_secret = self.client_credentials(config)

        if not refresh_token:
            logger.warning("[TOKEN_MANAGER] %s has no usable refresh token", label)
            return None
        if not client_id or not client_secret:
            logger.warning("[TOKEN_MANAGER] %s client credentials not configured", label)
            return None

        try:
            tokens = await self._refresh(refresh_token, client_id, client_secret)
        except (TokenRefreshError, httpx.HTTPError, ValueError) as e:
            logger.error("[TOKEN_MANAGER] %s refresh failed: %s", label, e)
            return None

        return self._persist(tokens, mark_connected=False)

    async def _refresh(self, refresh_token: str, client_id: str, client_secret: str) -> Dict[str, Any]:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        if self.send_scope_on_token_calls:
            data["scope"] = " ".join(self.scopes)

        logger.info("[TOKEN_MANAGER] Refreshing %s access token", self.provider.value)
        return await self._post_token_endpoint(data, TokenRefreshError)

    async def _post_token_endpoint(self, data: Dict[str, str], error_cls) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
            transport=self.transport,
        ) as client:
            response = await client.post(
                self.get_token_endpoint(),
                data=data,
                headers={"Accept": "application/json"},
            )

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200 or not body.get("access_token"):
            message = body.get("error_description") or body.get("error") or response.text[:200]
            raise error_cls(f"HTTP {response.status_code}: {message}")
        return body

    def _persist(self, tokens: Dict[str, Any], *, mark_connected: bool) -> Optional[str]:
        """Encrypt and store a token endpoint response; returns the access token."""
        expires_at = self.clock() + timedelta(seconds=parse_expires_in(tokens.get("expires_in")))
        access_token = tokens["access_token"]

        try:
            with self.session_factory() as db:
                config = get_or_create_provider_config(db, self.provider)
                store_provider_tokens(
                    db,
                    config,
                    access_token=access_token,
                    refresh_token=tokens.get("refresh_token"),
                    expires_at=expires_at,
                    instance_url=tokens.get("instance_url"),
                    mark_connected=mark_connected,
                )
                db.commit()
        except Exception as e:
            logger.error("[TOKEN_MANAGER] Failed to persist %s tokens: %s", self.provider.value, e)
            capture_exception(e, extra={"provider": self.provider.value})
            if mark_connected:
                raise OAuthError("Could not store tokens") from e

        logger.info(
            "[TOKEN_MANAGER] %s token valid until %s",
            self.provider.value, expires_at.isoformat(),
        )
        return access_token

    # ------------------------------------------------------------------
    # Connect flow
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> Optional[str]:
        """Build the provider consent URL, or None when OAuth is not configured."""
        with self.session_factory() as db:
            client_id, _ = self.client_credentials(get_provider_config(db, self.provider))
        redirect_uri = self.redirect_uri()
        if not client_id or not redirect_uri:
            return None

        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }
        params.update(self.extra_authorize_params)
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> None:
        """Exchange an authorization code and store the encrypted tokens.

        Raises:
            OAuthError: When the provider rejects the code or OAuth is not configured.
        """
        with self.session_factory() as db:
            client_id, client_secret = self.client_credentials(get_provider_config(db, self.provider))
        redirect_uri = self.redirect_uri()
        if not client_id or not client_secret or not redirect_uri:
            raise OAuthError(f"{self.provider.value} OAuth is not configured")

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
        }
        if self.send_scope_on_token_calls:
            data["scope"] = " ".join(self.scopes)

        try:
            tokens = await self._post_token_endpoint(data, OAuthError)
        except httpx.HTTPError as e:
            raise OAuthError(f"Token endpoint unreachable: {e}") from e

        if not tokens.get("refresh_token"):
            # Without a refresh token the connection dies within the hour
            raise OAuthError("Provider did not return a refresh token")

        self._persist(tokens, mark_connected=True)
        logger.info("[TOKEN_MANAGER] %s connected", self.provider.value)


class GoogleAdsTokenManager(TokenManager):
    provider = ProviderEnum.google_ads
    authorize_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"
    scopes = ("https://www.googleapis.com/auth/adwords",)
    extra_authorize_params = {"access_type": "offline", "prompt": "consent select_account"}

    def client_credentials(self, config):
        return self.settings.GOOGLE_ADS_CLIENT_ID, self.settings.GOOGLE_ADS_CLIENT_SECRET

    def redirect_uri(self):
        return self.settings.GOOGLE_ADS_REDIRECT_URI or f"{self.settings.BASE_URL}/api/channels/google_ads/callback"


class BingAdsTokenManager(TokenManager):
    provider = ProviderEnum.bing_ads
    authorize_endpoint = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    token_endpoint = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    scopes = ("https://ads.microsoft.com/msads.manage", "offline_access")
    extra_authorize_params = {"prompt": "consent"}
    send_scope_on_token_calls = True

    def client_credentials(self, config):
        return self.settings.BING_ADS_CLIENT_ID, self.settings.BING_ADS_CLIENT_SECRET

    def redirect_uri(self):
        return self.settings.BING_ADS_REDIRECT_URI or f"{self.settings.BASE_URL}/api/channels/bing_ads/callback"


class SalesforceTokenManager(TokenManager):
    provider = ProviderEnum.salesforce
    scopes = ("api", "refresh_token")
    extra_authorize_params = {"prompt": "consent"}

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.settings.SALESFORCE_LOGIN_URL.rstrip('/')}/services/oauth2/authorize"

    def get_token_endpoint(self) -> str:
        return f"{self.settings.SALESFORCE_LOGIN_URL.rstrip('/')}/services/oauth2/token"

    def client_credentials(self, config):
        if config is None:
            return None, None
        return config.client_id, get_decrypted_token(config, "client_secret")

    def redirect_uri(self):
        return self.settings.SALESFORCE_REDIRECT_URI or f"{self.settings.BASE_URL}/api/channels/salesforce/callback"


class StaticTokenManager:
    """Decrypt-only manager for providers whose token never refreshes (Meta)."""

    def __init__(self, session_factory: Callable, provider: ProviderEnum = ProviderEnum.meta):
        self.session_factory = session_factory
        self.provider = provider

    async def get_valid_access_token(self) -> Optional[str]:
        with self.session_factory() as db:
            config = get_provider_config(db, self.provider)
            if not config or not config.is_enabled or not config.is_connected:
                logger.info("[TOKEN_MANAGER] %s not connected", self.provider.value)
                return None
            return get_decrypted_token(config, "access")


def build_token_managers(session_factory: Callable, settings, transport=None) -> Dict[ProviderEnum, Any]:
    """Managers for every provider, keyed by provider."""
    return {
        ProviderEnum.google_ads: GoogleAdsTokenManager(session_factory, settings, transport),
        ProviderEnum.bing_ads: BingAdsTokenManager(session_factory, settings, transport),
        ProviderEnum.salesforce: SalesforceTokenManager(session_factory, settings, transport),
        ProviderEnum.meta: StaticTokenManager(session_factory),
    }
