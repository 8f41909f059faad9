"""Error taxonomy for the meeting engine.

Each error carries the HTTP status and a stable machine code so clients can
tell a full room apart from an ended one without parsing messages.
"""

from fastapi import status


class MeetingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "meeting_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MeetingError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"


class NotFound(MeetingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class CapacityExceeded(MeetingError):
    status_code = status.HTTP_409_CONFLICT
    code = "capacity_exceeded"

    def __init__(self, message: str, *, limit: int):
        super().__init__(message)
        self.limit = limit


class MeetingEndedError(MeetingError):
    status_code = status.HTTP_410_GONE
    code = "meeting_ended"


class Forbidden(MeetingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class SignatureError(MeetingError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "invalid_signature"
