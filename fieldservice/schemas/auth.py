import uuid
from typing import Optional, List

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    identifier: str  # username or email
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class RefreshRequest(BaseModel):
    refresh_token: str


class PasswordForgotRequest(BaseModel):
    identifier: str


class PasswordResetRequest(BaseModel):
    token: str
    new_password: str = Field(min_length=8)


class PositionOut(BaseModel):
    id: uuid.UUID
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None

    class Config:
        from_attributes = True


class PermissionGrant(BaseModel):
    module: str
    action: str
    scope: str = "global"


class MeResponse(BaseModel):
    id: uuid.UUID
    email: str
    username: Optional[str] = None
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    full_name: str
    address: Optional[str] = None
    role: str
    position: Optional[PositionOut] = None
    permissions: List[PermissionGrant] = []
