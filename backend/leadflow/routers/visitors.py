"""Public visitor tracking beacon."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..services.visitor_service import track_visitor
from ..utils.params import client_ip

router = APIRouter(prefix="/api/visitors", tags=["Visitors"])


@router.post("/track")
def track(payload: schemas.VisitorTrack, request: Request, db: Session = Depends(get_db)):
    """Record a page view; returns the click id the page should keep."""
    visitor = track_visitor(
        db,
        payload.model_dump(),
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return {"success": True, "click_id": visitor.click_id}
