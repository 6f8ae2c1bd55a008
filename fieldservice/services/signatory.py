"""
Noted-by / approved-by checkboxes on service reports.

Only the user named as the signatory on the record may flip the flag;
positions and the legacy admin role do not grant it.
"""
from datetime import datetime, timezone

import structlog
from sqlalchemy.orm import Session

from ..errors import ValidationError, AuthorizationError, NotFoundError
from ..forms import FORM_TYPES_BY_TABLE, SIGNATORY_TABLES
from ..models.models import User
from .audit import record_audit, ACTION_UPDATE


logger = structlog.get_logger(__name__)

SIGNATORY_FIELDS = ("noted_by", "approved_by")


def toggle_signatory_flag(db: Session, table: str, record_id, field: str, checked, user: User):
    if table not in SIGNATORY_TABLES:
        raise ValidationError("Invalid table name")
    if field not in SIGNATORY_FIELDS:
        raise ValidationError("Invalid field. Must be 'noted_by' or 'approved_by'")
    if not isinstance(checked, bool):
        raise ValidationError("checked must be a boolean")

    model = FORM_TYPES_BY_TABLE[table].model
    record = db.query(model).filter(model.id == record_id).first()
    if record is None:
        raise NotFoundError("Record not found")

    if getattr(record, f"{field}_user_id") != user.id:
        raise AuthorizationError("Only the designated signatory can toggle this approval")

    flag = f"{field}_checked"
    old_value = getattr(record, flag)
    setattr(record, flag, checked)
    record.updated_at = datetime.now(timezone.utc)
    record.updated_by = user.id
    db.flush()
    record_audit(
        db,
        table_name=table,
        record_id=record.id,
        action=ACTION_UPDATE,
        performed_by=user.id,
        old_data={flag: old_value},
        new_data={flag: checked},
        context={"signatory": field},
    )
    db.commit()
    db.refresh(record)
    logger.info("signatory_toggled", table=table, record_id=str(record.id), field=field,
                checked=checked, user_id=str(user.id))
    return record
