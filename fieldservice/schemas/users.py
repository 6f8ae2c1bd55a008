import uuid
from typing import Optional

from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    email: str
    password: str = Field(min_length=8)
    firstname: str
    lastname: str
    username: Optional[str] = None
    address: Optional[str] = None  # branch
    phone: Optional[str] = None
    position_id: Optional[uuid.UUID] = None


class UserUpdate(BaseModel):
    # Only fields present in the request are applied
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    username: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    position_id: Optional[uuid.UUID] = None
    role: Optional[str] = None  # legacy admin|user
    is_active: Optional[bool] = None
