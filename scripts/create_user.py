"""
Create (or update) a user with a position and branch.

Usage:
    python scripts/create_user.py EMAIL PASSWORD --position "Admin 2" --branch "Branch A" [--admin]
"""
import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from fieldservice.auth.security import get_password_hash
from fieldservice.db import Base, SessionLocal, engine
from fieldservice.models.models import User, Position
from fieldservice.seed import seed_reference_data


def create_user(email: str, password: str, position_name=None, branch=None, admin: bool = False,
                firstname=None, lastname=None):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_reference_data(db)
        position = None
        if position_name:
            position = db.query(Position).filter(Position.name == position_name).first()
            if position is None:
                names = ", ".join(p.name for p in db.query(Position).order_by(Position.name).all())
                print(f"[ERROR] Unknown position '{position_name}'. Available: {names}")
                return 1

        email = email.strip().lower()
        user = db.query(User).filter(User.email == email).first()
        if user is None:
            user = User(email=email, username=email.split("@")[0])
            db.add(user)
            print(f"[CREATE] {email}")
        else:
            print(f"[UPDATE] {email}")

        user.password_hash = get_password_hash(password)
        user.position_id = position.id if position else None
        user.address = branch
        user.role = "admin" if admin else "user"
        user.firstname = firstname or user.firstname
        user.lastname = lastname or user.lastname
        user.is_active = True
        db.commit()
        print(f"[OK] position={position_name or '-'} branch={branch or '-'} role={user.role}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create or update a user")
    parser.add_argument("email")
    parser.add_argument("password")
    parser.add_argument("--position", help="Position name, e.g. 'Admin 1'")
    parser.add_argument("--branch", help="Branch (address) the user belongs to")
    parser.add_argument("--admin", action="store_true", help="Set the legacy admin role")
    parser.add_argument("--firstname")
    parser.add_argument("--lastname")
    args = parser.parse_args()
    sys.exit(create_user(args.email, args.password, args.position, args.branch, args.admin,
                         args.firstname, args.lastname))
