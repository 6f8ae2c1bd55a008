"""
Error taxonomy for the API.

Each class is an HTTPException so services can raise them directly and
FastAPI renders them as ``{"detail": ...}`` with the matching status.
"""
from fastapi import HTTPException, status


class ValidationError(HTTPException):
    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class AuthenticationError(HTTPException):
    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class AuthorizationError(HTTPException):
    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class UpstreamError(HTTPException):
    """Persistence or storage failure. The caller only sees a generic message."""

    def __init__(self, detail: str = "Internal Server Error"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


_REQUEST_PARTS = ("body", "query", "path", "header", "cookie")


def _field_name(loc) -> str:
    parts = [str(p) for p in loc if p not in _REQUEST_PARTS]
    return ".".join(parts) or "request body"


def describe_request_errors(errors) -> str:
    """One-line detail for pydantic request errors, e.g. "Missing required fields: recordId"."""
    if any(e.get("type") == "json_invalid" for e in errors):
        return "Invalid JSON body"
    missing, invalid = [], []
    for e in errors:
        bucket = missing if e.get("type") == "missing" else invalid
        name = _field_name(e.get("loc", ()))
        if name not in bucket:
            bucket.append(name)
    if missing:
        return "Missing required fields: " + ", ".join(missing)
    return "Invalid value for " + ", ".join(invalid)
