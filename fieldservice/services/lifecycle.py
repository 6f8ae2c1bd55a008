"""
Soft-delete / restore lifecycle shared by every form table.

Rows are never physically removed. Signature images and attachment files
are left in storage so a restored record is complete again.
"""
from datetime import datetime, timezone
from typing import Optional, List, Dict

import structlog
from sqlalchemy.orm import Session

from ..errors import ValidationError, AuthorizationError, NotFoundError
from ..forms import FormType, FORM_TYPES, DELETE_BY_ADMIN_ROLE, get_form_type
from ..models.models import User
from .audit import record_audit, snapshot, ACTION_DELETE, ACTION_RESTORE
from .permissions import has_permission, check_record_permission, is_admin_role


logger = structlog.get_logger(__name__)


def active(db: Session, model):
    """Query over the non-deleted rows of a form table."""
    return db.query(model).filter(model.deleted_at.is_(None))


def get_active_or_404(db: Session, form_type: FormType, record_id):
    record = active(db, form_type.model).filter(form_type.model.id == record_id).first()
    if record is None:
        raise NotFoundError(f"{form_type.name} not found")
    return record


def _authorize_delete(db: Session, form_type: FormType, record, user: User) -> None:
    if form_type.delete_policy == DELETE_BY_ADMIN_ROLE:
        if not is_admin_role(db, user.id):
            raise AuthorizationError("Only administrators can delete records")
        return
    check = check_record_permission(db, user.id, record.created_by, "delete")
    if not check.allowed:
        raise AuthorizationError("You do not have permission to delete this record")


def soft_delete(db: Session, form_type: FormType, record_id, user: User):
    model = form_type.model
    record = db.query(model).filter(model.id == record_id).first()
    if record is None:
        raise NotFoundError("Record not found")
    if record.deleted_at is not None:
        raise ValidationError("Record is already deleted")

    _authorize_delete(db, form_type, record, user)

    old_data = snapshot(record)
    record.deleted_at = datetime.now(timezone.utc)
    record.deleted_by = user.id
    db.flush()
    record_audit(
        db,
        table_name=form_type.table,
        record_id=record.id,
        action=ACTION_DELETE,
        performed_by=user.id,
        old_data=old_data,
        new_data=snapshot(record),
    )
    db.commit()
    db.refresh(record)
    logger.info("record_soft_deleted", table=form_type.table, record_id=str(record.id), user_id=str(user.id))
    return record


def restore(db: Session, form_type_slug: Optional[str], record_id, user: User):
    if not has_permission(db, user.id, "form_records", "restore"):
        raise AuthorizationError("You do not have permission to restore deleted records")
    if not form_type_slug or not record_id:
        raise ValidationError("formType and id are required")
    form_type = get_form_type(form_type_slug)
    if form_type is None:
        raise ValidationError(f"Unknown form type: {form_type_slug}")

    model = form_type.model
    record = db.query(model).filter(model.id == record_id).first()
    if record is None:
        raise NotFoundError("Record not found")
    if record.deleted_at is None:
        raise ValidationError("Record is not deleted")

    old_data = snapshot(record)
    record.deleted_at = None
    record.deleted_by = None
    db.flush()
    record_audit(
        db,
        table_name=form_type.table,
        record_id=record.id,
        action=ACTION_RESTORE,
        performed_by=user.id,
        old_data=old_data,
        new_data=snapshot(record),
    )
    db.commit()
    db.refresh(record)
    logger.info("record_restored", table=form_type.table, record_id=str(record.id), user_id=str(user.id))
    return record


def _user_names(db: Session, user_ids) -> Dict[str, str]:
    ids = {uid for uid in user_ids if uid}
    if not ids:
        return {}
    users = db.query(User).filter(User.id.in_(ids)).all()
    return {str(u.id): u.full_name for u in users}


def list_deleted(db: Session, user: User, form_type_slug: Optional[str] = None) -> List[Dict]:
    """Trash view: soft-deleted rows across every form table, newest deletion first."""
    if not has_permission(db, user.id, "form_records", "restore"):
        raise AuthorizationError("You do not have permission to view deleted records")

    if form_type_slug and form_type_slug in FORM_TYPES:
        form_types = [FORM_TYPES[form_type_slug]]
    else:
        form_types = list(FORM_TYPES.values())

    items = []
    for form_type in form_types:
        model = form_type.model
        rows = (
            db.query(model)
            .filter(model.deleted_at.isnot(None))
            .order_by(model.deleted_at.desc())
            .all()
        )
        for row in rows:
            items.append({
                "id": str(row.id),
                "form_type": form_type.slug,
                "form_name": form_type.name,
                "job_order": getattr(row, form_type.job_order_field, None) or "N/A",
                "customer": getattr(row, form_type.customer_field, None) or "N/A",
                "created_at": row.created_at.isoformat() if row.created_at else None,
                "deleted_at": row.deleted_at,
                "deleted_by": row.deleted_by,
                "created_by": str(row.created_by) if row.created_by else None,
            })

    items.sort(key=lambda item: item["deleted_at"], reverse=True)
    names = _user_names(db, [item["deleted_by"] for item in items])
    for item in items:
        deleted_by = str(item["deleted_by"]) if item["deleted_by"] else None
        item["deleted_at"] = item["deleted_at"].isoformat()
        item["deleted_by"] = deleted_by
        item["deleted_by_name"] = names.get(deleted_by, deleted_by) if deleted_by else "Unknown"
    return items


def count_active(db: Session) -> Dict[str, int]:
    return {slug: active(db, form_type.model).count() for slug, form_type in FORM_TYPES.items()}
