"""
Reference data: positions, the permission catalog and default grants.
Safe to run on every startup.
"""
import structlog
from sqlalchemy.orm import Session

from .models.models import Position, Permission, PositionPermission


logger = structlog.get_logger(__name__)


POSITIONS = [
    ("Super Admin", "Super Administrator", "Full access; may approve at any level"),
    ("Admin 1", "Regional Administrator", "Second-level approver"),
    ("Admin 2", "Branch Administrator", "First-level approver for their branch"),
    ("Super User", "Super User", "Field staff with delete rights"),
    ("User", "User", "Field staff"),
]

PERMISSIONS = {
    "form_records": {
        "read": "View form records",
        "write": "Create and edit form records",
        "delete": "Soft-delete form records",
        "restore": "View the trash and restore deleted records",
    },
    "approvals": {
        "view": "View approval queues",
        "edit": "Change status and decide approvals",
    },
    "users": {
        "read": "View users and positions",
        "edit": "Edit users and position permissions",
    },
    "audit_logs": {
        "read": "View the audit log",
    },
}

ALL = [(module, action) for module, actions in PERMISSIONS.items() for action in actions]

# position -> [(module, action, scope)]
DEFAULT_GRANTS = {
    "Super Admin": [(m, a, "global") for m, a in ALL],
    "Admin 1": [(m, a, "global") for m, a in ALL if (m, a) != ("users", "edit")],
    "Admin 2": [
        ("form_records", "read", "global"),
        ("form_records", "write", "global"),
        ("approvals", "view", "branch"),
        ("approvals", "edit", "branch"),
        ("users", "read", "global"),
    ],
    "Super User": [
        ("form_records", "read", "global"),
        ("form_records", "write", "global"),
        ("form_records", "delete", "global"),
    ],
    "User": [
        ("form_records", "read", "global"),
        ("form_records", "write", "global"),
    ],
}


def seed_reference_data(db: Session) -> None:
    positions = {p.name: p for p in db.query(Position).all()}
    for name, display_name, description in POSITIONS:
        if name not in positions:
            positions[name] = Position(name=name, display_name=display_name, description=description)
            db.add(positions[name])

    permissions = {(p.module, p.action): p for p in db.query(Permission).all()}
    for module, actions in PERMISSIONS.items():
        for action, description in actions.items():
            if (module, action) not in permissions:
                permissions[(module, action)] = Permission(module=module, action=action, description=description)
                db.add(permissions[(module, action)])
    db.flush()

    created = 0
    for position_name, grants in DEFAULT_GRANTS.items():
        position = positions[position_name]
        # Only seed positions that have never been configured
        if db.query(PositionPermission).filter(PositionPermission.position_id == position.id).first():
            continue
        for module, action, scope in grants:
            db.add(PositionPermission(
                position_id=position.id,
                permission_id=permissions[(module, action)].id,
                scope=scope,
            ))
            created += 1
    db.commit()
    logger.info("reference_data_seeded", positions=len(positions), permissions=len(permissions), grants=created)
