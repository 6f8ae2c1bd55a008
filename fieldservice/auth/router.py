import secrets
import smtplib
import uuid
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..config import settings
from ..errors import AuthenticationError, ValidationError
from ..models.models import User, PasswordReset
from ..schemas.auth import (
    LoginRequest,
    TokenResponse,
    RefreshRequest,
    PasswordForgotRequest,
    PasswordResetRequest,
    MeResponse,
    PositionOut,
    PermissionGrant,
)
from ..services.approvals import approver_role
from ..services.permissions import list_permissions
from .security import (
    get_password_hash,
    verify_password,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_current_user,
)


router = APIRouter(prefix="/auth", tags=["auth"])
logger = structlog.get_logger(__name__)


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    identifier = req.identifier.strip()
    user = (
        db.query(User)
        .filter((User.username == identifier) | (User.email == identifier.lower()))
        .first()
    )
    if not user or not user.is_active or not verify_password(req.password, user.password_hash):
        logger.info("login_failed", identifier=identifier)
        raise AuthenticationError("Invalid credentials")
    access = create_access_token(str(user.id))
    refresh = create_refresh_token(str(user.id))
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    logger.info("login_succeeded", user_id=str(user.id))
    return TokenResponse(access_token=access, refresh_token=refresh)


@router.post("/refresh", response_model=TokenResponse)
def refresh(req: RefreshRequest, db: Session = Depends(get_db)):
    # Refresh tokens are not persisted or rotated server-side
    payload = decode_token(req.refresh_token)
    if payload.get("type") != "refresh":
        raise ValidationError("Invalid refresh token")
    try:
        user_uuid = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise AuthenticationError("Invalid subject")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active:
        logger.info("refresh_rejected", user_id=str(user_uuid))
        raise AuthenticationError("User not active")
    user_id = str(user.id)
    return TokenResponse(access_token=create_access_token(user_id), refresh_token=create_refresh_token(user_id))


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return MeResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        firstname=user.firstname,
        lastname=user.lastname,
        full_name=user.full_name,
        address=user.address,
        role=user.role,
        position=PositionOut.model_validate(user.position) if user.position else None,
        permissions=[PermissionGrant(**p) for p in list_permissions(db, user)],
    )


@router.get("/position")
def my_position(user: User = Depends(get_current_user)):
    """Position of the current user and the approval level it carries."""
    role = approver_role(user)
    return {
        "position_id": str(user.position_id) if user.position_id else None,
        "position_name": user.position.name if user.position else None,
        "display_name": user.position.display_name if user.position else None,
        "approval_level": role.level if role else None,
        "branch_scoped": role.branch_scoped if role else False,
    }


def _send_reset_email(user: User, token: str) -> None:
    link = f"{settings.public_base_url}/reset-password?token={token}"
    msg = EmailMessage()
    msg["Subject"] = f"Reset your {settings.app_name} password"
    msg["From"] = settings.mail_from
    msg["To"] = user.email
    msg.set_content(f"Click to reset your password: {link}")
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as s:
        if settings.smtp_tls:
            s.starttls()
        if settings.smtp_username and settings.smtp_password:
            s.login(settings.smtp_username, settings.smtp_password)
        s.send_message(msg)


# Password reset
@router.post("/password/forgot")
def password_forgot(req: PasswordForgotRequest, db: Session = Depends(get_db)):
    identifier = req.identifier.strip()
    user = (
        db.query(User)
        .filter((User.username == identifier) | (User.email == identifier.lower()))
        .first()
    )
    # Same answer whether or not the account exists
    if not user:
        return {"status": "ok"}
    token = secrets.token_urlsafe(32)
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.password_reset_ttl_seconds)
    db.add(PasswordReset(user_id=user.id, token=token, expires_at=expires_at))
    db.commit()
    if settings.smtp_host and settings.mail_from:
        try:
            _send_reset_email(user, token)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("password_reset_email_failed", user_id=str(user.id), error=str(e))
    return {"status": "ok"}


@router.post("/password/reset")
def password_reset(req: PasswordResetRequest, db: Session = Depends(get_db)):
    pr = db.query(PasswordReset).filter(PasswordReset.token == req.token).first()
    if not pr:
        raise ValidationError("Invalid or expired token")
    # Normalize datetimes to UTC-aware before comparison
    now_utc = datetime.now(timezone.utc)
    expires_at = pr.expires_at
    if expires_at and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if pr.used_at is not None or (expires_at and expires_at < now_utc):
        raise ValidationError("Invalid or expired token")
    user = db.query(User).filter(User.id == pr.user_id).first()
    if not user:
        raise ValidationError("Invalid token")
    user.password_hash = get_password_hash(req.new_password)
    pr.used_at = now_utc
    db.commit()
    logger.info("password_reset", user_id=str(user.id))
    return {"status": "ok"}
