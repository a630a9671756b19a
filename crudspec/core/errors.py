from __future__ import annotations

from fastapi import HTTPException
from pydantic import ValidationError


class QueryCompileError(ValueError):
    pass


class StructuralError(QueryCompileError):
    pass


class FieldError(QueryCompileError):
    def __init__(self, message: str, *, column: str = ""):
        super().__init__(message)
        self.column = column


class ConfigurationError(FieldError):
    pass


class ColumnValidationError(QueryCompileError):
    def __init__(self, invalid_columns: list[str], *, location: str = ""):
        self.invalid_columns = list(invalid_columns)
        self.location = location
        joined = ", ".join(self.invalid_columns)
        message = f"invalid columns: {joined}"
        if location:
            message = f"in {location}: {message}"
        super().__init__(message)


class ModelNotFoundError(LookupError):
    pass


class ModelRegistrationError(ValueError):
    pass


def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, ModelNotFoundError):
        return HTTPException(status_code=404, detail=str(exc) or "Model not found")
    if isinstance(exc, QueryCompileError):
        return HTTPException(status_code=400, detail=str(exc) or "Invalid query")
    if isinstance(exc, ValidationError):
        # Malformed options such as both cursors set are client errors.
        detail = "; ".join(str(err.get("msg", "")) for err in exc.errors()) or "Invalid query"
        return HTTPException(status_code=400, detail=detail)
    return HTTPException(status_code=500, detail="Query compilation failed")
