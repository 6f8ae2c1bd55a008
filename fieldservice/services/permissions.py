"""
Permission checking service.

Two independent authorization paths coexist:
- position based: users.position_id -> position_permissions -> permissions
  (module, action), with a scope of "global" or "branch";
- legacy flat role: users.role == "admin".
Each endpoint decides which one applies.
"""
from dataclasses import dataclass
from typing import Optional, List, Dict

from sqlalchemy.orm import Session

from ..models.models import User, Permission, PositionPermission


SCOPE_GLOBAL = "global"
SCOPE_BRANCH = "branch"


@dataclass
class PermissionCheck:
    allowed: bool
    is_admin: bool
    is_owner: bool


def _grant(db: Session, user_id, module: str, action: str) -> Optional[PositionPermission]:
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.position_id:
        return None
    return (
        db.query(PositionPermission)
        .join(Permission, PositionPermission.permission_id == Permission.id)
        .filter(
            PositionPermission.position_id == user.position_id,
            Permission.module == module,
            Permission.action == action,
        )
        .first()
    )


def has_permission(db: Session, user_id, module: str, action: str) -> bool:
    """True when the user's position grants (module, action). Fails closed."""
    return _grant(db, user_id, module, action) is not None


def get_scope(db: Session, user_id, module: str, action: str) -> Optional[str]:
    """Scope of the grant ("global" or "branch"), or None when not granted."""
    grant = _grant(db, user_id, module, action)
    if grant is None:
        return None
    return grant.scope or SCOPE_GLOBAL


def check_record_permission(
    db: Session,
    user_id,
    record_created_by,
    action: str = "edit",
    module: str = "form_records",
) -> PermissionCheck:
    """
    Check if a user may edit or delete a record.
    - delete needs (module, delete)
    - edit needs (module, write); the record owner with write is also allowed
    """
    is_owner = record_created_by is not None and str(record_created_by) == str(user_id)
    perm_action = "delete" if action == "delete" else "write"
    if has_permission(db, user_id, module, perm_action):
        return PermissionCheck(allowed=True, is_admin=True, is_owner=is_owner)
    return PermissionCheck(allowed=False, is_admin=False, is_owner=is_owner)


def get_user_role(db: Session, user_id) -> Optional[str]:
    user = db.query(User).filter(User.id == user_id).first()
    return user.role if user else None


def is_admin_role(db: Session, user_id) -> bool:
    """Legacy check on the flat users.role column."""
    return get_user_role(db, user_id) == "admin"


def list_permissions(db: Session, user: User) -> List[Dict[str, str]]:
    """Flattened {module, action, scope} grants of the user's position."""
    if not user.position_id:
        return []
    rows = (
        db.query(PositionPermission, Permission)
        .join(Permission, PositionPermission.permission_id == Permission.id)
        .filter(PositionPermission.position_id == user.position_id)
        .order_by(Permission.module.asc(), Permission.action.asc())
        .all()
    )
    return [
        {"module": perm.module, "action": perm.action, "scope": grant.scope or SCOPE_GLOBAL}
        for grant, perm in rows
    ]


def users_with_permission(db: Session, module: str, action: str) -> List[User]:
    """Active users whose position grants (module, action)."""
    return (
        db.query(User)
        .join(PositionPermission, PositionPermission.position_id == User.position_id)
        .join(Permission, PositionPermission.permission_id == Permission.id)
        .filter(Permission.module == module, Permission.action == action, User.is_active.is_(True))
        .order_by(User.firstname.asc(), User.lastname.asc())
        .all()
    )
