"""
Domain exceptions shared by the upload pipeline, the conversation store
and the OTP dispatch service. Each carries a stable code for API clients.
"""

from typing import Optional


class BrightCareError(Exception):
    code = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code

    @property
    def detail(self) -> str:
        return str(self)


class ValidationError(BrightCareError):
    code = "validation_error"


class UploadValidationError(ValidationError):
    code = "invalid_upload"


class MessageValidationError(ValidationError):
    code = "invalid_message"


class ContentStoreError(BrightCareError):
    code = "content_store_error"


class ContentNotFoundError(ContentStoreError):
    code = "not_found"


class AuthenticationError(BrightCareError):
    code = "authentication_failed"


class RemoteStoreError(BrightCareError):
    code = "remote_store_error"
