"""Dependency providers and settings management."""

from functools import lru_cache
from typing import List, Optional

from fastapi import Cookie, Depends, Header, HTTPException, Request, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import RoleEnum, User
from .security import decode_token


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"
    BASE_URL: str = "http://localhost:8000"
    ADMIN_APP_URL: str = "http://localhost:3000"
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    # Cookie domain must NOT include protocol (https://)
    COOKIE_DOMAIN: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379/0"

    # Google Ads
    GOOGLE_ADS_CLIENT_ID: Optional[str] = None
    GOOGLE_ADS_CLIENT_SECRET: Optional[str] = None
    GOOGLE_ADS_REDIRECT_URI: Optional[str] = None
    GOOGLE_ADS_DEVELOPER_TOKEN: Optional[str] = None
    GOOGLE_ADS_LOGIN_CUSTOMER_ID: Optional[str] = None
    GOOGLE_ADS_API_VERSION: str = "v20"

    # Microsoft Advertising
    BING_ADS_CLIENT_ID: Optional[str] = None
    BING_ADS_CLIENT_SECRET: Optional[str] = None
    BING_ADS_REDIRECT_URI: Optional[str] = None
    BING_ADS_DEVELOPER_TOKEN: Optional[str] = None

    # Salesforce (CRM); client id/secret live on the provider_configs row
    SALESFORCE_LOGIN_URL: str = "https://login.salesforce.com"
    SALESFORCE_REDIRECT_URI: Optional[str] = None
    SALESFORCE_API_VERSION: str = "v59.0"

    META_GRAPH_API_VERSION: str = "v21.0"

    # Dispatch tuning
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    DISPATCH_TASK_TIMEOUT_SECONDS: float = 45.0
    DISPATCH_MAX_CONCURRENCY: int = 4
    DISPATCH_ACK_WAIT_SECONDS: float = 0.0
    DEDUP_WINDOW_HOURS: int = 24

    # Unknown-identity postbacks: 404 keeps CRM callers from treating the
    # attribution gap as success; set to 200 for callers that retry on 4xx.
    UNKNOWN_IDENTITY_STATUS_CODE: int = 404
    IP_BLOCKLIST: str = ""

    # Maintenance
    VISITOR_RETENTION_DAYS: int = 180
    STALE_EVENT_MINUTES: int = 30

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> List[str]:
        return [o.strip() for o in self.BACKEND_CORS_ORIGINS.split(",") if o.strip()]

    @property
    def ip_blocklist(self) -> set:
        return {ip.strip() for ip in self.IP_BLOCKLIST.split(",") if ip.strip()}


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_current_user(
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(default=None),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
) -> User:
    """Resolve the current user from the Authorization header or `access_token` cookie.

    Both carry "Bearer <jwt>"; the prefix is optional on the cookie.
    """
    raw = authorization or access_token
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    if raw.startswith("Bearer "):
        token = raw[len("Bearer ") :]
    else:
        token = raw

    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = (
        db.query(User)
        .filter(User.email == subject)
        .first()
    )
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Role gate for the admin endpoints."""
    if current_user.role != RoleEnum.admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return current_user


def get_dispatcher(request: Request):
    """Return the Dispatcher built once in create_app()."""
    return request.app.state.dispatcher


def get_token_managers(request: Request):
    """Provider token managers keyed by ProviderEnum."""
    return request.app.state.token_managers


def get_postback_service(request: Request):
    return request.app.state.postback_service


def get_lead_service(request: Request):
    return request.app.state.lead_service


def get_app_settings(request: Request) -> Settings:
    """Settings the running app was built with (create_app may override them)."""
    return getattr(request.app.state, "settings", None) or get_settings()
