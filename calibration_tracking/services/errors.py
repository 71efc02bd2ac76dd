from __future__ import annotations


class TrackingError(RuntimeError):
    kind = "tracking_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(TrackingError):
    kind = "validation_error"
    status_code = 422


class NotFoundError(TrackingError):
    kind = "not_found"
    status_code = 404


class AuthenticationError(TrackingError):
    kind = "authentication_error"
    status_code = 401


class AuthorizationError(TrackingError):
    kind = "authorization_error"
    status_code = 403


class ConflictError(TrackingError):
    kind = "conflict"
    status_code = 400


class InternalError(TrackingError):
    kind = "internal_error"
    status_code = 500
