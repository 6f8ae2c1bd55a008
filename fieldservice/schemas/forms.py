import uuid
from typing import Optional, List, Any

from pydantic import BaseModel


class RestoreRequest(BaseModel):
    formType: Optional[str] = None
    id: Optional[uuid.UUID] = None


class SignatoryToggleRequest(BaseModel):
    table: Optional[str] = None
    recordId: uuid.UUID
    field: Optional[str] = None
    checked: Any = None  # must be a real boolean, checked by the service


class StatusUpdateRequest(BaseModel):
    status: Optional[str] = None


class ApprovalDecisionRequest(BaseModel):
    action: Optional[str] = None  # approve|reject
    notes: Optional[str] = None


class GrantInput(BaseModel):
    module: str
    action: str
    scope: str = "global"


class PositionGrantsUpdate(BaseModel):
    permissions: List[GrantInput]
