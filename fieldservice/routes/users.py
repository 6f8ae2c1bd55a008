import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import ValidationError, AuthorizationError, NotFoundError
from ..models.models import User, Position
from ..auth.security import get_password_hash, get_current_user, require_permission
from ..schemas.users import UserCreate, UserUpdate
from ..services.audit import record_audit, snapshot, ACTION_CREATE, ACTION_UPDATE
from ..services.permissions import users_with_permission


router = APIRouter(prefix="/users", tags=["users"])
logger = structlog.get_logger(__name__)

# Columns written to the audit log; never the password hash
PROFILE_FIELDS = ("email", "username", "firstname", "lastname", "address", "phone", "position_id", "role", "is_active")
ROLES = ("admin", "user")


def _user_to_dict(u: User) -> dict:
    position = u.position
    return {
        "id": str(u.id),
        "email": u.email,
        "username": u.username,
        "firstname": u.firstname,
        "lastname": u.lastname,
        "full_name": u.full_name,
        "address": u.address,
        "phone": u.phone,
        "role": u.role,
        "is_active": u.is_active,
        "position": (
            {"id": str(position.id), "name": position.name, "display_name": position.display_name}
            if position else None
        ),
        "created_at": u.created_at.isoformat() if u.created_at else None,
        "last_login_at": u.last_login_at.isoformat() if u.last_login_at else None,
    }


def _get_user_or_404(db: Session, user_id: uuid.UUID) -> User:
    u = db.query(User).filter(User.id == user_id).first()
    if not u:
        raise NotFoundError("User not found")
    return u


def _check_position(db: Session, position_id: Optional[uuid.UUID]) -> None:
    if position_id is not None and db.query(Position).filter(Position.id == position_id).first() is None:
        raise ValidationError("Unknown position")


def _check_unique(db: Session, field, value, exclude_id=None) -> None:
    if not value:
        return
    query = db.query(User).filter(field == value)
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    if query.first() is not None:
        raise ValidationError(f"{field.key.capitalize()} already in use")


@router.get("")
def list_users(
    q: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    _=Depends(require_permission("users", "read")),
):
    """
    List users with pagination

    Args:
        q: Search query (username, email, name or branch)
        page: Page number (1-indexed)
        limit: Number of items per page (default 50, max 200)
    """
    limit = min(max(1, limit), 200)
    page = max(1, page)

    query = db.query(User)
    if q:
        like = f"%{q}%"
        query = query.filter(
            (User.username.ilike(like))
            | (User.email.ilike(like))
            | (User.firstname.ilike(like))
            | (User.lastname.ilike(like))
            | (User.address.ilike(like))
        )
    total = query.count()
    rows = query.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "data": [_user_to_dict(u) for u in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


@router.get("/with-permission")
def list_users_with_permission(
    module: Optional[str] = None,
    action: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    """Users whose position grants (module, action); feeds the signatory pickers"""
    if not module or not action:
        raise ValidationError("Both 'module' and 'action' query parameters are required")
    rows = users_with_permission(db, module, action)
    return {
        "data": [_user_to_dict(u) for u in rows],
        "count": len(rows),
        "query": {"module": module, "action": action},
    }


@router.get("/{user_id}")
def get_user(user_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_permission("users", "read"))):
    return _user_to_dict(_get_user_or_404(db, user_id))


@router.post("", status_code=201)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    actor: User = Depends(require_permission("users", "edit")),
):
    email = payload.email.strip().lower()
    username = payload.username.strip() if payload.username else None
    _check_unique(db, User.email, email)
    _check_unique(db, User.username, username)
    _check_position(db, payload.position_id)

    u = User(
        email=email,
        username=username,
        firstname=payload.firstname,
        lastname=payload.lastname,
        address=payload.address,
        phone=payload.phone,
        position_id=payload.position_id,
        role="user",
        password_hash=get_password_hash(payload.password),
        is_active=True,
    )
    db.add(u)
    db.flush()
    record_audit(db, "users", u.id, ACTION_CREATE, performed_by=actor.id, new_data=snapshot(u, PROFILE_FIELDS))
    db.commit()
    db.refresh(u)
    logger.info("user_created", user_id=str(u.id), actor_id=str(actor.id))
    return {"success": True, "data": _user_to_dict(u)}


@router.patch("/{user_id}")
def update_user(
    user_id: uuid.UUID,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    actor: User = Depends(require_permission("users", "edit")),
):
    u = _get_user_or_404(db, user_id)
    changes = payload.model_dump(exclude_unset=True)
    for key in ("role", "is_active"):
        # not nullable
        if key in changes and changes[key] is None:
            del changes[key]
    if "role" in changes and changes["role"] not in ROLES:
        raise ValidationError("Role must be 'admin' or 'user'")
    if changes.get("is_active") is False and u.id == actor.id:
        raise AuthorizationError("You cannot deactivate your own account")
    if "username" in changes:
        changes["username"] = changes["username"].strip() if changes["username"] else None
        _check_unique(db, User.username, changes["username"], exclude_id=u.id)
    if "position_id" in changes:
        _check_position(db, changes["position_id"])

    before = snapshot(u, PROFILE_FIELDS)
    for key, value in changes.items():
        setattr(u, key, value)
    db.flush()
    after = snapshot(u, PROFILE_FIELDS)
    changed = sorted(k for k in PROFILE_FIELDS if before[k] != after[k])
    if changed:
        record_audit(
            db, "users", u.id, ACTION_UPDATE, performed_by=actor.id,
            old_data={k: before[k] for k in changed}, new_data={k: after[k] for k in changed},
            context={"changed_fields": changed},
        )
    db.commit()
    db.refresh(u)
    logger.info("user_updated", user_id=str(u.id), actor_id=str(actor.id), changed=changed)
    return {"success": True, "data": _user_to_dict(u)}


@router.delete("/{user_id}")
def deactivate_user(
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: User = Depends(require_permission("users", "edit")),
):
    """Accounts are deactivated, never removed: audit entries and signatory ids keep pointing at them"""
    u = _get_user_or_404(db, user_id)
    if u.id == actor.id:
        raise AuthorizationError("You cannot delete your own account.")
    if u.is_active:
        u.is_active = False
        record_audit(
            db, "users", u.id, ACTION_UPDATE, performed_by=actor.id,
            old_data={"is_active": True}, new_data={"is_active": False},
            context={"changed_fields": ["is_active"]},
        )
        db.commit()
        logger.info("user_deactivated", user_id=str(u.id), actor_id=str(actor.id))
    return {"success": True, "message": "User deactivated successfully"}
