"""Error taxonomy shared by services and routers."""

from fastapi import status


class GalaxyError(Exception):
    """Base error; carries the HTTP status it maps to and a client-safe message."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, data=None):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)


class AuthenticationFailed(GalaxyError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid credentials"


class Forbidden(GalaxyError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Access denied"


class ValidationFailed(GalaxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class NotFound(GalaxyError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class Conflict(GalaxyError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflict"


class AlreadyUsed(Conflict):
    default_message = "Token has already been used."


class PayloadTooLarge(GalaxyError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    default_message = "Request too large"


class RateLimited(GalaxyError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests"


class UpstreamFailure(GalaxyError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Upstream service failed"

    def __init__(self, message: str | None = None, data=None, status_code: int | None = None):
        super().__init__(message, data)
        if status_code is not None:
            self.status_code = status_code


class Timeout(GalaxyError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_message = "Request timeout"


class PartialFailure(GalaxyError):
    status_code = status.HTTP_207_MULTI_STATUS
    default_message = "Operation partially completed"
