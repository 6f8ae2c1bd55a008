"""
Audit logging service.
Append-only audit log with integrity hashing.
"""
import hashlib
import json
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, Iterable

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


ACTION_CREATE = "CREATE"
ACTION_UPDATE = "UPDATE"
ACTION_STATUS_CHANGE = "STATUS_CHANGE"
ACTION_DELETE = "DELETE"
ACTION_RESTORE = "RESTORE"


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def snapshot(obj, fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """JSON-safe dict of an ORM object's column values."""
    mapper = sa_inspect(obj).mapper
    keys = list(fields) if fields is not None else [attr.key for attr in mapper.column_attrs]
    return {key: _json_value(getattr(obj, key)) for key in keys}


def _utc_isoformat(value: datetime) -> str:
    # Naive timestamps are UTC (SQLite drops the offset on read)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _integrity_hash(
    table_name: str,
    record_id: str,
    action: str,
    performed_by: Optional[str],
    performed_at: datetime,
    old_data: Optional[Dict],
    new_data: Optional[Dict],
    context: Optional[Dict],
    secret: str,
) -> str:
    canonical_data = {
        "table_name": table_name,
        "record_id": str(record_id),
        "action": action,
        "performed_by": str(performed_by) if performed_by else None,
        "performed_at": _utc_isoformat(performed_at),
        "old_data": old_data,
        "new_data": new_data,
        "context": context,
    }
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def record_audit(
    db: Session,
    table_name: str,
    record_id,
    action: str,
    performed_by=None,
    old_data: Optional[Dict] = None,
    new_data: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Add an append-only audit log entry to the current transaction.

    The entry is flushed but not committed so that it lands in the same
    commit as the mutation it describes.

    Args:
        db: Database session
        table_name: Table of the mutated record
        record_id: Primary key of the mutated record
        action: CREATE|UPDATE|STATUS_CHANGE|DELETE|RESTORE
        performed_by: User ID who performed the action
        old_data: Snapshot before the mutation
        new_data: Snapshot after the mutation
        context: Additional context (approval decision, level, changed fields)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)
    """
    performed_at = datetime.now(timezone.utc)
    if integrity_secret is None:
        integrity_secret = settings.jwt_secret

    integrity_hash = None
    if integrity_secret:
        integrity_hash = _integrity_hash(
            table_name, str(record_id), action, performed_by, performed_at,
            old_data, new_data, context, integrity_secret,
        )

    entry = AuditLog(
        table_name=table_name,
        record_id=record_id,
        action=action,
        old_data=old_data,
        new_data=new_data,
        performed_by=performed_by,
        performed_at=performed_at,
        context=context,
        integrity_hash=integrity_hash,
    )
    db.add(entry)
    db.flush()
    return entry


def verify_integrity(entry: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """Recompute the hash of a stored entry and compare."""
    if not entry.integrity_hash:
        return False
    secret = integrity_secret if integrity_secret is not None else settings.jwt_secret
    expected = _integrity_hash(
        entry.table_name, str(entry.record_id), entry.action, entry.performed_by, entry.performed_at,
        entry.old_data, entry.new_data, entry.context, secret,
    )
    return expected == entry.integrity_hash


def get_audit_logs(
    db: Session,
    table_name: Optional[str] = None,
    record_id=None,
    limit: int = 100,
    offset: int = 0
) -> list:
    """
    Get audit logs with optional filtering, newest first.

    Args:
        db: Database session
        table_name: Filter by table
        record_id: Filter by record ID
        limit: Maximum number of results
        offset: Offset for pagination
    """
    query = db.query(AuditLog)

    if table_name:
        query = query.filter(AuditLog.table_name == table_name)

    if record_id:
        query = query.filter(AuditLog.record_id == record_id)

    query = query.order_by(AuditLog.performed_at.desc())
    query = query.limit(limit).offset(offset)

    return query.all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    all_keys = set(before.keys()) | set(after.keys())

    for key in all_keys:
        before_val = before.get(key)
        after_val = after.get(key)

        if before_val != after_val:
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }

    return diff
