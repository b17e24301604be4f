from typing import Optional


class StorefrontError(Exception):
    """Base class for errors that map to a user-visible HTTP response."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"message": self.message}


class InputError(StorefrontError):
    status_code = 400


class AuthenticationError(StorefrontError):
    status_code = 401


class AuthorizationError(StorefrontError):
    status_code = 403

    def __init__(self, message: str = "Access denied."):
        super().__init__(message)


class NotFoundError(StorefrontError):
    status_code = 404


class UpstreamError(StorefrontError):
    """An external collaborator (database or object store) call failed."""

    status_code = 502


class UploadError(UpstreamError):
    def __init__(self, step: str, reason: str):
        super().__init__(f"Upload failed while storing the {step}: {reason}")
        self.step = step
        self.reason = reason

    def to_dict(self):
        return {"message": self.message, "step": self.step}


class InsertError(UpstreamError):
    def __init__(self, reason: str):
        super().__init__(f"The product record could not be saved: {reason}")
        self.reason = reason


class DeleteError(UpstreamError):
    def __init__(self, reason: str):
        super().__init__(f"The product could not be deleted: {reason}")
        self.reason = reason
