class ScanRejected(Exception):
    """A scan validation outcome other than acceptance."""

    status_code = 500
    error_kind = "internal_error"
    default_message = "Something went wrong. Please scan a fresh code and try again."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "accepted": False,
            "error_kind": self.error_kind,
            "message": self.message,
        }


class Unauthenticated(ScanRejected):
    status_code = 401
    error_kind = "unauthenticated"
    default_message = "Unauthorized. Please sign in again."


class InvalidRequest(ScanRejected):
    status_code = 400
    error_kind = "invalid_request"
    default_message = "Missing code or device_id."


class InvalidToken(ScanRejected):
    status_code = 400
    error_kind = "invalid_token"
    default_message = "Invalid or expired QR code. Please scan a fresh code."


class DeviceConflict(ScanRejected):
    status_code = 403
    error_kind = "device_conflict"
    default_message = "Unauthorized device. Your account is bound to a different device."


class InternalError(ScanRejected):
    pass
