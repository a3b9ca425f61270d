class ServiceError(Exception):
    """Base for errors surfaced to API callers with a fixed HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Malformed input, or a transition the current state does not allow."""

    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class UnauthorizedError(ServiceError):
    status_code = 401
