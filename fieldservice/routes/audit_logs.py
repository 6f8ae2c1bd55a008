import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permission
from ..services.audit import get_audit_logs, snapshot, verify_integrity


router = APIRouter(prefix="/audit-logs", tags=["audit"])


@router.get("")
def list_audit_logs(
    table_name: Optional[str] = None,
    record_id: Optional[uuid.UUID] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _=Depends(require_permission("audit_logs", "read")),
):
    entries = get_audit_logs(db, table_name=table_name, record_id=record_id, limit=limit, offset=offset)
    result = []
    for entry in entries:
        item = snapshot(entry)
        item["integrity_ok"] = verify_integrity(entry)
        result.append(item)
    return {"data": result}
