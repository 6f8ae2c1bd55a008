import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import User
from ..auth.security import get_current_user, require_permission
from ..schemas.forms import ApprovalDecisionRequest
from ..services.approvals import pending_reports_for, decide_on_report
from ..services.audit import snapshot


router = APIRouter(prefix="/approvals", tags=["approvals"])


@router.get("/pending")
def pending_reports(db: Session = Depends(get_db), user: User = Depends(require_permission("form_records", "read"))):
    """Service reports awaiting (or already given) a decision at the user's level"""
    return pending_reports_for(db, user)


@router.post("/{approval_id}")
def decide_report(
    approval_id: uuid.UUID,
    payload: ApprovalDecisionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    approval = decide_on_report(db, approval_id, user, payload.action, payload.notes)
    verb = "approved" if payload.action == "approve" else "rejected"
    return {"success": True, "message": f"Report {verb} successfully", "data": snapshot(approval)}
