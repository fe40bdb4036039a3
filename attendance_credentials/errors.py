"""
Error taxonomy for the attendance credential core.

Every failure path raises one of these; the hosting layer maps ``code``
to its own responses.
"""


class AttendanceCredentialError(Exception):
    """Base class for all recoverable core errors"""

    code = "ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        return {"code": self.code, "message": self.message, **self.details}


class NotFound(AttendanceCredentialError):
    """DID, credential or revocation target is missing"""
    code = "NOT_FOUND"


class DuplicateSubject(AttendanceCredentialError):
    """External binding (card UID) already registered"""
    code = "DUPLICATE_SUBJECT"


class DuplicateForDay(AttendanceCredentialError):
    """Attendance already recorded for this subject and day bucket"""
    code = "DUPLICATE_FOR_DAY"


class UnknownSubject(AttendanceCredentialError):
    """Subject DID does not resolve"""
    code = "UNKNOWN_SUBJECT"


class AlreadyIssued(AttendanceCredentialError):
    """Subject already holds a valid credential"""
    code = "ALREADY_ISSUED"


class AlreadyRevoked(AttendanceCredentialError):
    code = "ALREADY_REVOKED"


class InsufficientAttendance(AttendanceCredentialError):
    """Attendance ratio below the issuance threshold"""
    code = "INSUFFICIENT_ATTENDANCE"


class InvalidSignature(AttendanceCredentialError):
    code = "INVALID_SIGNATURE"


class MalformedCredential(AttendanceCredentialError):
    code = "MALFORMED_CREDENTIAL"


class InvalidCardUid(AttendanceCredentialError):
    """NFC card UID is not 8-16 hex characters"""
    code = "INVALID_CARD_UID"


__all__ = [
    "AttendanceCredentialError",
    "NotFound",
    "DuplicateSubject",
    "DuplicateForDay",
    "UnknownSubject",
    "AlreadyIssued",
    "AlreadyRevoked",
    "InsufficientAttendance",
    "InvalidSignature",
    "MalformedCredential",
    "InvalidCardUid",
]
