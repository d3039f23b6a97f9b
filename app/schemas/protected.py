"""Schemas for the key validation endpoint."""
from pydantic import BaseModel


class ValidatedKeyData(BaseModel):
    """Counters of a key that passed validation."""
    keyId: str
    keyName: str
    usage: int
    monthlyLimit: int
    remainingRequests: int


class ValidationSuccessResponse(BaseModel):
    message: str
    data: ValidatedKeyData


class ValidationErrorResponse(BaseModel):
    error: str
