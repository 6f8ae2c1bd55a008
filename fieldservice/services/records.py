"""
Create / read / update for the form tables, plus signature and attachment uploads.
"""
import base64
import binascii
import os
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List, Tuple

import structlog
from slugify import slugify
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ValidationError, AuthorizationError, NotFoundError
from ..forms import FormType, FORM_TYPES, editable_columns
from ..models.models import FormAttachment, JobOrderRequest
from ..storage.provider import StorageProvider
from .approvals import (
    normalize_status,
    allocate_jo_number,
    format_jo_number,
    create_report_approval,
    PENDING_LEVEL_1,
)
from .audit import record_audit, snapshot, compute_diff, ACTION_CREATE, ACTION_UPDATE
from .lifecycle import active, get_active_or_404
from .permissions import check_record_permission


logger = structlog.get_logger(__name__)

DATA_URL_PREFIX = "data:image/"


def _coerce(key: str, column, value: Any) -> Any:
    if value is None:
        return None
    python_type = column.type.python_type
    if python_type is str:
        return str(value)
    if value == "":
        return None
    try:
        if python_type is bool:
            if isinstance(value, str):
                return value.strip().lower() in ("true", "1", "yes", "on")
            return bool(value)
        if python_type is int:
            return int(value)
        if python_type is Decimal:
            return Decimal(str(value))
        if python_type is datetime:
            return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
        if python_type is date:
            return value if isinstance(value, date) else date.fromisoformat(str(value)[:10])
        if python_type is uuid.UUID:
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except (TypeError, ValueError, InvalidOperation):
        raise ValidationError(f"Invalid value for {key}")
    return value


def clean_payload(form_type: FormType, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Keep the editable columns of the form and convert values to column types."""
    columns = editable_columns(form_type.model)
    values = {key: _coerce(key, columns[key], value) for key, value in payload.items() if key in columns}
    if form_type.has_status and values.get("status"):
        values["status"] = normalize_status(values["status"])
    return values


def _decode_data_url(value: str) -> Tuple[bytes, str]:
    header, _, encoded = value.partition(",")
    content_type = header[len("data:"):].split(";")[0] or "image/png"
    return base64.b64decode(encoded, validate=True), content_type


def upload_signatures(form_type: FormType, values: Dict[str, Any], storage: StorageProvider) -> None:
    """
    Replace base64 data-URL signatures in `values` with storage URLs.
    A failed upload is logged and the field is left empty.
    """
    for field in form_type.model.__signature_fields__:
        value = values.get(field)
        if not isinstance(value, str) or not value.startswith(DATA_URL_PREFIX):
            continue
        try:
            data, content_type = _decode_data_url(value)
            ext = content_type.split("/")[-1]
            key = f"{settings.signatures_prefix}/{form_type.table}/{field}-{uuid.uuid4().hex}.{ext}"
            storage.upload(key, data, content_type)
            values[field] = storage.get_public_url(key)
        except (binascii.Error, ValueError) as e:
            logger.warning("signature_upload_failed", table=form_type.table, field=field, error=str(e))
            values[field] = None
        except Exception as e:
            logger.error("signature_upload_failed", table=form_type.table, field=field, error=str(e), exc_info=True)
            values[field] = None


def serialize_record(form_type: FormType, record) -> Dict[str, Any]:
    data = snapshot(record)
    if form_type.has_status:
        data["status"] = normalize_status(record.status) or "Pending"
    return data


def list_records(db: Session, form_type: FormType) -> List[Dict[str, Any]]:
    model = form_type.model
    rows = active(db, model).order_by(model.created_at.desc()).all()
    return [serialize_record(form_type, row) for row in rows]


def available_job_orders(db: Session) -> List[Dict[str, Any]]:
    """Active job orders whose number no active form references yet."""
    used = set()
    for form_type in FORM_TYPES.values():
        if form_type.model is JobOrderRequest:
            continue
        column = getattr(form_type.model, form_type.job_order_field)
        used.update(value for (value,) in active(db, form_type.model).with_entities(column).all() if value)

    rows = active(db, JobOrderRequest).order_by(JobOrderRequest.created_at.desc()).all()
    return [
        {
            "id": str(row.id),
            "shop_field_jo_number": row.shop_field_jo_number,
            "full_customer_name": row.full_customer_name,
            "address": row.address,
        }
        for row in rows
        if row.shop_field_jo_number not in used
    ]


def list_attachments(db: Session, form_type: FormType, record_id) -> List[Dict[str, Any]]:
    rows = (
        db.query(FormAttachment)
        .filter(FormAttachment.form_type == form_type.slug, FormAttachment.record_id == record_id)
        .order_by(FormAttachment.created_at.asc())
        .all()
    )
    return [snapshot(row) for row in rows]


def create_record(db: Session, form_type: FormType, payload: Dict[str, Any], user, storage: StorageProvider):
    values = clean_payload(form_type, payload)
    upload_signatures(form_type, values, storage)

    record = form_type.model(**values)
    record.created_by = user.id
    record.created_at = datetime.now(timezone.utc)
    if form_type.has_status:
        record.status = values.get("status") or "Pending"
        record.approval_status = PENDING_LEVEL_1
    if form_type.model is JobOrderRequest:
        record.jo_number = allocate_jo_number(db)

    db.add(record)
    db.flush()

    if form_type.model is JobOrderRequest:
        if record.jo_number is None:
            db.refresh(record, attribute_names=["jo_number"])
        record.shop_field_jo_number = format_jo_number(record.jo_number)
        db.flush()

    if form_type.has_signatories:
        create_report_approval(db, form_type, record, user.id)

    record_audit(
        db,
        table_name=form_type.table,
        record_id=record.id,
        action=ACTION_CREATE,
        performed_by=user.id,
        new_data=snapshot(record),
    )
    db.commit()
    db.refresh(record)
    logger.info("record_created", table=form_type.table, record_id=str(record.id), user_id=str(user.id))
    return record


def update_record(db: Session, form_type: FormType, record_id, payload: Dict[str, Any], user,
                  storage: StorageProvider):
    model = form_type.model
    record = db.query(model).filter(model.id == record_id).first()
    if record is None:
        raise NotFoundError(f"{form_type.name} not found")
    if record.deleted_at is not None:
        raise ValidationError("Cannot update a deleted record")

    check = check_record_permission(db, user.id, record.created_by, "edit")
    if not check.allowed:
        raise AuthorizationError("You do not have permission to edit this record")

    values = clean_payload(form_type, payload)
    # Old signature images stay in storage; the record just points at the new one
    upload_signatures(form_type, values, storage)

    old_data = snapshot(record)
    for key, value in values.items():
        setattr(record, key, value)
    record.updated_at = datetime.now(timezone.utc)
    record.updated_by = user.id
    db.flush()

    new_data = snapshot(record)
    changed = sorted(k for k in compute_diff(old_data, new_data) if k not in ("updated_at", "updated_by"))
    record_audit(
        db,
        table_name=form_type.table,
        record_id=record.id,
        action=ACTION_UPDATE,
        performed_by=user.id,
        old_data=old_data,
        new_data=new_data,
        context={"changed_fields": changed},
    )
    db.commit()
    db.refresh(record)
    logger.info("record_updated", table=form_type.table, record_id=str(record.id),
                changed_fields=changed, user_id=str(user.id))
    return record


def attachment_key(form_type: FormType, record_id, original_name: str) -> str:
    today = datetime.utcnow().strftime("%Y-%m-%d")
    safe_name = slugify(os.path.splitext(original_name)[0]) or "file"
    ext = os.path.splitext(original_name)[1]
    return f"{settings.attachments_prefix}/{form_type.slug}/{record_id}/{today}_{uuid.uuid4().hex[:8]}_{safe_name}{ext}"


def add_attachments(
    db: Session,
    form_type: FormType,
    record_id,
    files: List[Tuple[str, Optional[str], bytes]],
    titles: List[str],
    user,
    storage: StorageProvider,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Upload (filename, content_type, data) triples one after another.
    Each saved file is committed on its own; a failure skips that file only.
    """
    record = get_active_or_404(db, form_type, record_id)
    check = check_record_permission(db, user.id, record.created_by, "edit")
    if not check.allowed:
        raise AuthorizationError("You do not have permission to edit this record")

    saved, failed = [], []
    for index, (filename, content_type, data) in enumerate(files):
        filename = filename or f"attachment-{index + 1}"
        description = titles[index] if index < len(titles) else None
        try:
            key = storage.upload(attachment_key(form_type, record.id, filename), data, content_type)
            attachment = FormAttachment(
                form_type=form_type.slug,
                record_id=record.id,
                file_key=key,
                file_url=storage.get_public_url(key),
                file_name=filename,
                file_type=content_type,
                file_size=len(data),
                description=description,
                created_by=user.id,
            )
            db.add(attachment)
            db.commit()
            db.refresh(attachment)
            saved.append(snapshot(attachment))
        except Exception as e:
            db.rollback()
            logger.error("attachment_upload_failed", table=form_type.table, record_id=str(record.id),
                         file_name=filename, error=str(e), exc_info=True)
            failed.append({"file_name": filename, "error": str(e)})

    return {"saved": saved, "failed": failed}
