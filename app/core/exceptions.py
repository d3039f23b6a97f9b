"""
Error taxonomy for API key management.

Each error carries the user-facing message that is surfaced verbatim to callers.
"""
from typing import Optional


class KeyServiceError(Exception):
    """Base class for key management failures."""
    default_message = "Something went wrong with this API key. Please try again."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidKeyInputError(KeyServiceError):
    default_message = "Invalid API key input"


class DuplicateNameError(KeyServiceError):
    default_message = "A key with this name already exists"


class PermissionDeniedError(KeyServiceError):
    default_message = "You do not have permission to manage this API key"


class ConflictingReferenceError(KeyServiceError):
    default_message = "Cannot delete this API key as it is being used by other services"


class KeyNotFoundOrForbiddenError(KeyServiceError):
    default_message = "API key not found"


class CreateFailedError(KeyServiceError):
    default_message = "Failed to create API key. Please try again."


class UpdateFailedError(KeyServiceError):
    default_message = "Failed to update API key. Please try again."


class DeleteFailedError(KeyServiceError):
    default_message = "Failed to delete API key. Please try again."
