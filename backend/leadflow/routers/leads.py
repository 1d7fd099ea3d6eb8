"""Public lead submission endpoint (landing page forms)."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import get_lead_service
from ..services.lead_service import LeadValidationError
from ..utils.params import client_ip, collect_params

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/leads", tags=["Leads"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_lead(
    request: Request,
    db: Session = Depends(get_db),
    service=Depends(get_lead_service),
):
    """Create a lead from a form post (JSON or urlencoded).

    Unmapped form fields are kept on the lead as hidden fields. The ad
    channel and CRM sends run in the background; the response reports the
    channels already settled.
    """
    payload = await collect_params(request)
    try:
        return await service.submit(
            db,
            payload,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except LeadValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
