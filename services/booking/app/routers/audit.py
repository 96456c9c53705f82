from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from app.core.auth_dependencies import TokenPayload, require_admin
from app.core.database import get_db
from app.schemas.booking_schema import AuditLogOut
from . import crud

router = APIRouter(prefix="/audit-logs", tags=["Audit"])


@router.get("", response_model=List[AuditLogOut])
def list_audit_logs(
    entity_id: Optional[UUID] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    _: TokenPayload = Depends(require_admin),
):
    return crud.list_audit_logs(db, entity_id=entity_id, action=action, limit=limit)
