"""Error taxonomy for convoy operations.

Every rejected precondition surfaces as one of these types so request
handlers can map it to a transport response without inspecting messages.
Only ``StorageUnavailable`` is worth retrying as-is.
"""


class ConvoyError(Exception):
    code = "CONVOY_ERROR"
    status_code = 400
    retryable = False
    default_message = "Convoy operation failed"

    def __init__(self, message: str = None, code: str = None):
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class ValidationError(ConvoyError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid input data"

    def __init__(self, message: str = None, details: list = None):
        super().__init__(message)
        self.details = details or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.details:
            data["details"] = self.details
        return data


class NotFoundError(ConvoyError):
    code = "CONVOY_NOT_FOUND"
    status_code = 404
    default_message = "Convoy not found"


class ForbiddenError(ConvoyError):
    code = "ACCESS_DENIED"
    status_code = 403
    default_message = "Access denied"


class AlreadyMemberError(ConvoyError):
    code = "ALREADY_MEMBER"
    status_code = 409
    default_message = "You are already a member of this convoy"


class NotMemberError(ConvoyError):
    code = "NOT_MEMBER"
    status_code = 400
    default_message = "You are not a member of this convoy"


class CapacityError(ConvoyError):
    code = "CONVOY_FULL"
    status_code = 409
    default_message = "Convoy is at maximum capacity"


class InviteRequiredError(ConvoyError):
    code = "INVITE_REQUIRED"
    status_code = 403
    default_message = "This convoy requires an invite code"


class StorageUnavailable(ConvoyError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_message = "Storage is temporarily unavailable, please retry"
