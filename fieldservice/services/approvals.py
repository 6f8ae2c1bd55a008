"""
Approval workflow for job orders, daily time sheets and service reports.

State machine:
    pending_level_1 -> pending_level_2 -> approved
    pending_level_1 | pending_level_2 -> rejected

Level 1 is the branch admin ("Admin 2"), restricted to records created in
their own branch. Level 2 is the regional admin ("Admin 1"). "Super Admin"
may act on either pending level.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, List, Iterable

import structlog
from sqlalchemy import func, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import ValidationError, AuthorizationError, NotFoundError
from ..forms import FormType, FORM_TYPES_BY_TABLE, FLOW_INLINE
from ..models.models import User, Approval, JobOrderRequest
from .audit import record_audit, ACTION_STATUS_CHANGE, _json_value
from .lifecycle import active, get_active_or_404
from .permissions import has_permission, get_scope, SCOPE_BRANCH


logger = structlog.get_logger(__name__)


# =====================
# Operational status
# =====================

CANONICAL_STATUSES = ("Pending", "In-Progress", "Close", "Cancelled")
_STATUS_LOOKUP = {s.lower(): s for s in CANONICAL_STATUSES}


def normalize_status(raw: Optional[str]) -> Optional[str]:
    """Map "in-progress", "IN PROGRESS", "pending"... onto the display set.
    Unrecognized values are returned unchanged."""
    if raw is None:
        return None
    key = str(raw).strip().lower().replace("_", "-").replace(" ", "-")
    return _STATUS_LOOKUP.get(key, raw)


# =====================
# Approval state machine
# =====================

PENDING_LEVEL_1 = "pending_level_1"
PENDING_LEVEL_2 = "pending_level_2"
APPROVED = "approved"
REJECTED = "rejected"

PENDING_LEVELS = {PENDING_LEVEL_1: 1, PENDING_LEVEL_2: 2}
FINAL_LEVEL = 2
ANY_LEVEL = 0

DECISIONS = ("approve", "reject")


@dataclass(frozen=True)
class ApproverRole:
    level: int  # ANY_LEVEL for the override role
    branch_scoped: bool = False


APPROVER_POSITIONS: Dict[str, ApproverRole] = {
    "Admin 2": ApproverRole(level=1, branch_scoped=True),
    "Admin 1": ApproverRole(level=2),
    "Super Admin": ApproverRole(level=ANY_LEVEL),
}


def approver_role(user: User) -> Optional[ApproverRole]:
    position = getattr(user, "position", None)
    if position is None:
        return None
    return APPROVER_POSITIONS.get(position.name)


def next_state(current: str, decision: str) -> str:
    level = PENDING_LEVELS.get(current)
    if level is None:
        raise ValidationError("This record is not pending approval")
    if decision == "reject":
        return REJECTED
    if level == FINAL_LEVEL:
        return APPROVED
    return f"pending_level_{level + 1}"


def _is_branch_scoped(db: Session, user: User, role: Optional[ApproverRole] = None) -> bool:
    if role is not None and role.branch_scoped:
        return True
    return get_scope(db, user.id, "approvals", "edit") == SCOPE_BRANCH


def _same_branch(db: Session, user: User, creator_id) -> bool:
    if creator_id is None:
        return False
    creator = db.query(User).filter(User.id == creator_id).first()
    creator_address = creator.address if creator else None
    return bool(creator_address) and creator_address == user.address


def _decide(db: Session, subject, table_name: str, requester_id, user: User, role: ApproverRole,
            decision: str, notes: Optional[str]):
    current = subject.approval_status
    level = PENDING_LEVELS.get(current)
    if level is None:
        raise ValidationError("This record is not pending approval")
    if role.level != ANY_LEVEL and role.level != level:
        raise AuthorizationError("You cannot approve at this level")
    if _is_branch_scoped(db, user, role) and not _same_branch(db, user, requester_id):
        raise AuthorizationError("You can only approve records from your branch")

    now = datetime.now(timezone.utc)
    update = {
        "approval_status": next_state(current, decision),
        f"level_{level}_approved_by": user.id,
        f"level_{level}_approved_at": now,
    }
    if notes:
        update[f"level_{level}_notes"] = notes
    for key, value in update.items():
        setattr(subject, key, value)
    subject.updated_at = now
    db.flush()

    record_audit(
        db,
        table_name=table_name,
        record_id=subject.id,
        action=ACTION_STATUS_CHANGE,
        performed_by=user.id,
        old_data={"approval_status": current},
        new_data={key: _json_value(value) for key, value in update.items()},
        context={"decision": decision, "level": level},
    )
    db.commit()
    db.refresh(subject)
    logger.info(
        "approval_decided",
        table=table_name,
        record_id=str(subject.id),
        decision=decision,
        level=level,
        approval_status=subject.approval_status,
        user_id=str(user.id),
    )
    return subject


def _check_decision(decision: Optional[str]) -> None:
    if decision not in DECISIONS:
        raise ValidationError("Invalid action. Must be 'approve' or 'reject'")


def _require_approver(user: User) -> ApproverRole:
    role = approver_role(user)
    if role is None:
        raise AuthorizationError("You do not have approval permissions")
    return role


def decide_on_form(db: Session, form_type: FormType, record_id, user: User,
                   decision: Optional[str], notes: Optional[str] = None):
    """Approve or reject a job order request or daily time sheet."""
    if form_type.approval_flow != FLOW_INLINE:
        raise ValidationError(f"{form_type.name} is approved through /approvals")
    _check_decision(decision)
    role = _require_approver(user)
    record = get_active_or_404(db, form_type, record_id)
    return _decide(db, record, form_type.table, record.created_by, user, role, decision, notes)


def decide_on_report(db: Session, approval_id, user: User,
                     decision: Optional[str], notes: Optional[str] = None) -> Approval:
    """Approve or reject the approval row of a service report."""
    _check_decision(decision)
    role = _require_approver(user)
    approval = db.query(Approval).filter(Approval.id == approval_id).first()
    if approval is None:
        raise NotFoundError("Approval record not found")
    return _decide(db, approval, "approvals", approval.requested_by, user, role, decision, notes)


def create_report_approval(db: Session, form_type: FormType, record, requested_by) -> Approval:
    approval = Approval(
        report_table=form_type.table,
        report_id=record.id,
        requested_by=requested_by,
        approval_status=PENDING_LEVEL_1,
    )
    db.add(approval)
    db.flush()
    return approval


# =====================
# Operational status changes
# =====================

def update_status(db: Session, form_type: FormType, record_id, raw_status: Optional[str], user: User):
    if not form_type.has_status:
        raise ValidationError(f"{form_type.name} has no status workflow")
    status = normalize_status(raw_status)
    if status not in CANONICAL_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(CANONICAL_STATUSES)}")
    if not has_permission(db, user.id, "approvals", "edit"):
        raise AuthorizationError("You do not have permission to change status")

    record = get_active_or_404(db, form_type, record_id)

    if get_scope(db, user.id, "approvals", "edit") == SCOPE_BRANCH:
        if not _same_branch(db, user, record.created_by):
            raise AuthorizationError("You can only update records from your branch")

    old_status = record.status
    record.status = status
    record.updated_at = datetime.now(timezone.utc)
    record.updated_by = user.id
    db.flush()
    record_audit(
        db,
        table_name=form_type.table,
        record_id=record.id,
        action=ACTION_STATUS_CHANGE,
        performed_by=user.id,
        old_data={"status": old_status},
        new_data={"status": status},
    )
    db.commit()
    db.refresh(record)
    logger.info("status_changed", table=form_type.table, record_id=str(record.id),
                old_status=old_status, new_status=status, user_id=str(user.id))
    return record


# =====================
# Visibility
# =====================

def _users_by_id(db: Session, ids: Iterable) -> Dict:
    wanted = {i for i in ids if i}
    if not wanted:
        return {}
    return {u.id: u for u in db.query(User).filter(User.id.in_(wanted)).all()}


def _visible(query, model, owner_column, role: Optional[ApproverRole], user: User):
    if role is None:
        return query.filter(owner_column == user.id)
    if role.level == 1:
        return query.filter(or_(model.approval_status == PENDING_LEVEL_1, model.level_1_approved_by.isnot(None)))
    if role.level == 2:
        return query.filter(or_(model.approval_status == PENDING_LEVEL_2, model.level_2_approved_by.isnot(None)))
    return query


def _queue_role(db: Session, user: User) -> Optional[ApproverRole]:
    """Approver role for the queues. Without approvals.view the user only sees their own requests."""
    role = approver_role(user)
    if role is not None and not has_permission(db, user.id, "approvals", "view"):
        return None
    return role


def _meta(user: User, role: Optional[ApproverRole]) -> Dict:
    return {
        "approval_level": role.level if role else None,
        "position_name": user.position.name if user.position else None,
        "is_requester": role is None,
    }


def _approval_block(row, approvers: Dict) -> Dict:
    def name(uid):
        u = approvers.get(uid)
        return u.full_name if u else None

    return {
        "approval_status": row.approval_status,
        "level_1_approved_by": str(row.level_1_approved_by) if row.level_1_approved_by else None,
        "level_1_approved_by_name": name(row.level_1_approved_by),
        "level_1_approved_at": row.level_1_approved_at.isoformat() if row.level_1_approved_at else None,
        "level_1_notes": row.level_1_notes,
        "level_2_approved_by": str(row.level_2_approved_by) if row.level_2_approved_by else None,
        "level_2_approved_by_name": name(row.level_2_approved_by),
        "level_2_approved_at": row.level_2_approved_at.isoformat() if row.level_2_approved_at else None,
        "level_2_notes": row.level_2_notes,
    }


def _branch_filter(db: Session, rows: List, owner_attr: str, user: User, role: Optional[ApproverRole]):
    """Keep rows whose owner is in the approver's branch. Unknown branch sees nothing."""
    if role is None or not _is_branch_scoped(db, user, role):
        return rows, _users_by_id(db, [getattr(r, owner_attr) for r in rows])
    owners = _users_by_id(db, [getattr(r, owner_attr) for r in rows])
    if not user.address:
        return [], owners
    kept = [
        r for r in rows
        if owners.get(getattr(r, owner_attr)) is not None
        and owners[getattr(r, owner_attr)].address == user.address
    ]
    return kept, owners


def pending_for(db: Session, user: User, form_type: FormType) -> Dict:
    """Records the user may see in the approval queue of a job order / time sheet form."""
    if form_type.approval_flow != FLOW_INLINE:
        raise ValidationError(f"{form_type.name} is approved through /approvals")
    role = _queue_role(db, user)
    model = form_type.model
    query = _visible(active(db, model), model, model.created_by, role, user)
    rows = query.order_by(model.created_at.desc()).all()
    rows, owners = _branch_filter(db, rows, "created_by", user, role)

    approvers = _users_by_id(db, [r.level_1_approved_by for r in rows] + [r.level_2_approved_by for r in rows])
    data = []
    for row in rows:
        requester = owners.get(row.created_by)
        item = {
            "id": str(row.id),
            "job_order": getattr(row, form_type.job_order_field, None),
            "customer": getattr(row, form_type.customer_field, None),
            "status": normalize_status(row.status),
            "created_at": row.created_at.isoformat() if row.created_at else None,
            "requested_by": str(row.created_by) if row.created_by else None,
            "requester_name": requester.full_name if requester else "Unknown",
            "requester_address": (requester.address or "") if requester else "",
        }
        item.update(_approval_block(row, approvers))
        data.append(item)
    return {"data": data, "meta": _meta(user, role)}


def pending_reports_for(db: Session, user: User) -> Dict:
    """Approval queue for service reports."""
    role = _queue_role(db, user)
    query = _visible(db.query(Approval), Approval, Approval.requested_by, role, user)
    rows = query.order_by(Approval.created_at.desc()).all()
    rows, owners = _branch_filter(db, rows, "requested_by", user, role)

    approvers = _users_by_id(db, [r.level_1_approved_by for r in rows] + [r.level_2_approved_by for r in rows])
    data = []
    for row in rows:
        form_type = FORM_TYPES_BY_TABLE.get(row.report_table)
        report = None
        if form_type is not None:
            report = db.query(form_type.model).filter(form_type.model.id == row.report_id).first()
        requester = owners.get(row.requested_by)
        item = {
            "id": str(row.id),
            "report_table": row.report_table,
            "report_id": str(row.report_id),
            "form_type": form_type.slug if form_type else row.report_table,
            "form_type_label": form_type.name if form_type else row.report_table,
            "job_order": getattr(report, "job_order", None) if report else None,
            "customer": getattr(report, "customer", None) if report else None,
            "report_deleted": bool(report is None or report.deleted_at is not None),
            "created_at": row.created_at.isoformat() if row.created_at else None,
            "requested_by": str(row.requested_by) if row.requested_by else None,
            "requester_name": requester.full_name if requester else "Unknown",
            "requester_address": (requester.address or "") if requester else "",
        }
        item.update(_approval_block(row, approvers))
        data.append(item)
    return {"data": data, "meta": _meta(user, role)}


# =====================
# Job order numbering
# =====================

JO_SEQUENCE = "job_order_request_form_jo_number_seq"


def format_jo_number(number: int) -> str:
    return f"JO-{int(number):04d}"


def _peek_via_function(db: Session) -> Optional[int]:
    return db.execute(text("SELECT get_next_jo_number()")).scalar()


def _peek_via_sequence(db: Session) -> Optional[int]:
    row = db.execute(text(f"SELECT last_value, is_called FROM {JO_SEQUENCE}")).first()
    if row is None:
        return None
    last_value, is_called = row
    return last_value + 1 if is_called else last_value


def _peek_via_max(db: Session) -> int:
    current = db.query(func.max(JobOrderRequest.jo_number)).scalar()
    return (current or 0) + 1


def peek_next_jo_number(db: Session) -> int:
    """
    Next job order number without consuming the counter.
    Strategies, most to least concurrency-safe: database function,
    sequence introspection, max(jo_number) + 1.
    """
    strategies = (("function", _peek_via_function), ("sequence", _peek_via_sequence))
    for name, strategy in strategies:
        try:
            value = strategy(db)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("jo_number_fallback", strategy=name, error=str(e))
            continue
        if value is not None:
            return int(value)
    return _peek_via_max(db)


def allocate_jo_number(db: Session) -> Optional[int]:
    """Number for a row about to be inserted. None lets the column's sequence fill it."""
    if db.get_bind().dialect.supports_sequences:
        return None
    return _peek_via_max(db)
