"""Admin management of blocked IP addresses."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import require_admin
from ..models import BlockedIP, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/blocklist", tags=["Blocklist"])


def _serialize(entry: BlockedIP) -> dict:
    return {
        "id": entry.id,
        "ip_address": entry.ip_address,
        "reason": entry.reason,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


@router.get("", response_model=list[schemas.BlockedIPOut])
def list_blocked(db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    entries = db.query(BlockedIP).order_by(BlockedIP.created_at.desc(), BlockedIP.id.desc()).all()
    return [_serialize(e) for e in entries]


@router.post("", response_model=schemas.BlockedIPOut, status_code=status.HTTP_201_CREATED)
def add_blocked(
    payload: schemas.BlockedIPCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Block an IP. Leads from it are flagged on their next submission or postback."""
    if db.query(BlockedIP).filter(BlockedIP.ip_address == payload.ip_address).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="IP already blocked")

    entry = BlockedIP(ip_address=payload.ip_address, reason=payload.reason)
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info("[BLOCKLIST] %s blocked by %s", entry.ip_address, current_user.email)
    return _serialize(entry)


@router.delete("/{entry_id}")
def remove_blocked(
    entry_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    entry = db.get(BlockedIP, entry_id)
    if not entry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Blocked IP not found")
    db.delete(entry)
    db.commit()
    logger.info("[BLOCKLIST] %s unblocked by %s", entry.ip_address, current_user.email)
    return {"success": True}
