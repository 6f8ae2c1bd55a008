import uuid
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, Body, File, Form, UploadFile
from sqlalchemy.orm import Session

from ..db import get_db
from ..forms import require_form_type, FORM_TYPES
from ..models.models import User, Approval
from ..auth.security import get_current_user, require_permission
from ..schemas.forms import (
    RestoreRequest,
    SignatoryToggleRequest,
    StatusUpdateRequest,
    ApprovalDecisionRequest,
)
from ..services import approvals, lifecycle, records
from ..services.audit import snapshot
from ..services.signatory import toggle_signatory_flag
from ..storage.factory import get_storage
from ..storage.provider import StorageProvider


router = APIRouter(prefix="/forms", tags=["forms"])


# =====================
# Cross-form endpoints
# =====================

@router.get("/types")
def list_form_types(_=Depends(get_current_user)):
    return [
        {"slug": ft.slug, "name": ft.name, "table": ft.table, "has_status": ft.has_status,
         "has_signatories": ft.has_signatories}
        for ft in FORM_TYPES.values()
    ]


@router.get("/counts")
def form_counts(db: Session = Depends(get_db), _=Depends(require_permission("form_records", "read"))):
    """Active record count per form type"""
    return lifecycle.count_active(db)


@router.get("/trash")
def list_trash(
    formType: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Soft-deleted records across every form table"""
    return {"data": lifecycle.list_deleted(db, user, formType)}


@router.patch("/restore")
def restore_record(payload: RestoreRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    record = lifecycle.restore(db, payload.formType, payload.id, user)
    return {"success": True, "message": "Record restored successfully", "id": str(record.id)}


@router.patch("/signatory-approval")
def signatory_approval(
    payload: SignatoryToggleRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    record = toggle_signatory_flag(db, payload.table, payload.recordId, payload.field, payload.checked, user)
    return {
        "success": True,
        "id": str(record.id),
        "field": payload.field,
        "checked": getattr(record, f"{payload.field}_checked"),
    }


@router.get("/job-order-request/approved")
def list_available_job_orders(db: Session = Depends(get_db), _=Depends(require_permission("form_records", "read"))):
    """Job orders a report can still be linked to"""
    return {"data": records.available_job_orders(db)}


@router.get("/job-order-request/next-number")
def next_jo_number(db: Session = Depends(get_db), _=Depends(get_current_user)):
    """Preview of the number the next job order will get. Does not reserve it."""
    number = approvals.peek_next_jo_number(db)
    return {"next_number": number, "formatted": approvals.format_jo_number(number)}


# =====================
# Per-form endpoints
# =====================

@router.get("/{form_type}")
def list_forms(form_type: str, db: Session = Depends(get_db), _=Depends(require_permission("form_records", "read"))):
    ft = require_form_type(form_type)
    return {"data": records.list_records(db, ft)}


@router.post("/{form_type}", status_code=201)
def create_form(
    form_type: str,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: User = Depends(require_permission("form_records", "write")),
    storage: StorageProvider = Depends(get_storage),
):
    ft = require_form_type(form_type)
    record = records.create_record(db, ft, payload, user, storage)
    return {"success": True, "data": records.serialize_record(ft, record)}


@router.get("/{form_type}/pending")
def pending_forms(
    form_type: str,
    db: Session = Depends(get_db),
    user: User = Depends(require_permission("form_records", "read")),
):
    """Approval queue for job orders and daily time sheets"""
    ft = require_form_type(form_type)
    return approvals.pending_for(db, user, ft)


@router.get("/{form_type}/{record_id}")
def get_form(
    form_type: str,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(require_permission("form_records", "read")),
):
    ft = require_form_type(form_type)
    record = lifecycle.get_active_or_404(db, ft, record_id)
    data = records.serialize_record(ft, record)
    data["attachments"] = records.list_attachments(db, ft, record.id)
    if ft.has_signatories:
        approval = (
            db.query(Approval)
            .filter(Approval.report_table == ft.table, Approval.report_id == record.id)
            .first()
        )
        data["approval"] = snapshot(approval) if approval else None
    return {"data": data}


@router.patch("/{form_type}/{record_id}")
def update_form(
    form_type: str,
    record_id: uuid.UUID,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: StorageProvider = Depends(get_storage),
):
    ft = require_form_type(form_type)
    record = records.update_record(db, ft, record_id, payload, user, storage)
    return {"success": True, "data": records.serialize_record(ft, record)}


@router.delete("/{form_type}/{record_id}")
def delete_form(
    form_type: str,
    record_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ft = require_form_type(form_type)
    lifecycle.soft_delete(db, ft, record_id, user)
    return {"success": True, "message": "Record deleted successfully"}


@router.patch("/{form_type}/{record_id}/status")
def update_form_status(
    form_type: str,
    record_id: uuid.UUID,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ft = require_form_type(form_type)
    record = approvals.update_status(db, ft, record_id, payload.status, user)
    return {"success": True, "data": records.serialize_record(ft, record)}


@router.post("/{form_type}/{record_id}/approve")
def decide_form(
    form_type: str,
    record_id: uuid.UUID,
    payload: ApprovalDecisionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ft = require_form_type(form_type)
    record = approvals.decide_on_form(db, ft, record_id, user, payload.action, payload.notes)
    verb = "approved" if payload.action == "approve" else "rejected"
    return {
        "success": True,
        "message": f"{ft.name} {verb} successfully",
        "data": records.serialize_record(ft, record),
    }


@router.post("/{form_type}/{record_id}/attachments")
async def upload_attachments(
    form_type: str,
    record_id: uuid.UUID,
    files: List[UploadFile] = File(...),
    titles: List[str] = Form(default=[]),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: StorageProvider = Depends(get_storage),
):
    ft = require_form_type(form_type)
    # Read every upload first; storage calls then run in order
    contents = [(f.filename, f.content_type, await f.read()) for f in files]
    result = records.add_attachments(db, ft, record_id, contents, titles, user, storage)
    return {"success": not result["failed"], **result}
