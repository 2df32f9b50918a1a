class EngineError(Exception):
    """Base class for failures reported back to the acting user."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(EngineError):
    status_code = 404


class PermissionDenied(EngineError):
    status_code = 403


class ValidationFailed(EngineError):
    status_code = 400


class InvalidTransition(EngineError):
    status_code = 409


class ConfirmationRequired(EngineError):
    status_code = 428
