import uuid

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import ValidationError, NotFoundError
from ..models.models import User, Position, Permission, PositionPermission
from ..auth.security import require_permission, get_current_user
from ..schemas.forms import PositionGrantsUpdate
from ..services.permissions import list_permissions, SCOPE_GLOBAL, SCOPE_BRANCH


router = APIRouter(prefix="/permissions", tags=["permissions"])
logger = structlog.get_logger(__name__)


def _position_dict(position: Position) -> dict:
    return {
        "id": str(position.id),
        "name": position.name,
        "display_name": position.display_name,
        "description": position.description,
        "permissions": sorted(
            (
                {"module": g.permission.module, "action": g.permission.action, "scope": g.scope}
                for g in position.grants
            ),
            key=lambda p: (p["module"], p["action"]),
        ),
    }


@router.get("/me")
def my_permissions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Grants of the current user's position"""
    return {
        "position": user.position.name if user.position else None,
        "permissions": list_permissions(db, user),
    }


@router.get("/positions")
def list_positions(db: Session = Depends(get_db), _=Depends(require_permission("users", "read"))):
    positions = db.query(Position).order_by(Position.name.asc()).all()
    return [_position_dict(p) for p in positions]


@router.put("/positions/{position_id}")
def update_position_permissions(
    position_id: uuid.UUID,
    payload: PositionGrantsUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permission("users", "edit")),
):
    """Replace the grants of a position"""
    position = db.query(Position).filter(Position.id == position_id).first()
    if position is None:
        raise NotFoundError("Position not found")

    catalog = {(p.module, p.action): p for p in db.query(Permission).all()}
    grants = {}
    for item in payload.permissions:
        permission = catalog.get((item.module, item.action))
        if permission is None:
            raise ValidationError(f"Unknown permission: {item.module}.{item.action}")
        if item.scope not in (SCOPE_GLOBAL, SCOPE_BRANCH):
            raise ValidationError("Scope must be 'global' or 'branch'")
        grants[permission.id] = PositionPermission(permission_id=permission.id, scope=item.scope)

    position.grants.clear()
    db.flush()
    position.grants.extend(grants.values())
    db.commit()
    db.refresh(position)
    logger.info("position_permissions_updated", position=position.name, count=len(grants), user_id=str(user.id))
    return _position_dict(position)
