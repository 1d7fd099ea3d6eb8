"""Authentication endpoints: login, me, logout."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_app_settings, get_current_user
from ..models import User
from ..security import create_access_token, verify_password


logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/api/auth",
    tags=["Authentication"],
    responses={
        401: {"model": schemas.ErrorResponse, "description": "Unauthorized"},
    },
)


@router.post("/login", response_model=schemas.TokenResponse, summary="Admin login")
def login_user(
    payload: schemas.UserLogin,
    response: Response,
    request: Request,
    db: Session = Depends(get_db),
):
    """Authenticate an admin and set an HTTP-only JWT cookie.

    Cookie:
    - name: access_token
    - value: "Bearer <jwt>"
    - httponly; SameSite=None + Secure over https, Lax over plain http
    """
    user = db.query(User).filter(User.email == payload.email).first()
    if not user or not verify_password(payload.password, user.password_hash):
        logger.info("[AUTH] Failed login for %s", payload.email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    token = create_access_token(subject=user.email, role=user.role.value)
    settings = get_app_settings(request)

    cookie_kwargs = {
        "key": "access_token",
        "value": f"Bearer {token}",
        "httponly": True,
        "samesite": "none",
        "secure": True,
        "max_age": 7 * 24 * 3600,
        "path": "/",
    }
    # Browsers drop SameSite=None cookies that are not Secure
    if request.url.scheme == "http":
        cookie_kwargs["samesite"] = "lax"
        cookie_kwargs["secure"] = False
    if settings.COOKIE_DOMAIN:
        cookie_kwargs["domain"] = settings.COOKIE_DOMAIN
    response.set_cookie(**cookie_kwargs)

    logger.info("[AUTH] %s logged in", user.email)
    return schemas.TokenResponse(access_token=token, role=user.role.value)


@router.get("/me")
def me(current_user: User = Depends(get_current_user)):
    return {
        "id": current_user.id,
        "email": current_user.email,
        "name": current_user.name,
        "role": current_user.role.value,
    }


@router.post("/logout")
def logout(response: Response):
    response.delete_cookie("access_token", path="/")
    return {"success": True}
