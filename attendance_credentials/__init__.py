"""
Attendance Credential Core
==========================

Định danh phi tập trung và chứng chỉ điểm danh có thể xác thực

Components:
- KeyManager: Quản lý cryptographic keys (Ed25519, secp256k1)
- IdentityRegistry: Tạo và resolve DIDs, key rotation
- AttendanceLedger: Sổ điểm danh append-only theo ngày
- CredentialIssuer: Cấp và thu hồi Verifiable Credentials
- CredentialVerifier: Xác thực Verifiable Credentials (offline)
- AttendanceCredentialService: Service tích hợp chính

Standards:
- W3C DID Core 1.0: https://www.w3.org/TR/did-core/
- W3C Verifiable Credentials: https://www.w3.org/TR/vc-data-model/
"""

from .attendance_ledger import AttendanceEvent, AttendanceLedger
from .attendance_service import AttendanceCredentialService, AttendanceReceipt
from .config import CoreSettings, configure_logging
from .credential_issuer import (
    AttendanceClaims,
    Credential,
    CredentialIssuer,
    CredentialStatus,
    IssuancePolicy,
    RevocationEntry,
    RevocationList,
    SubjectState,
)
from .credential_verifier import CredentialVerifier, VerificationFailure, VerificationResult
from .errors import (
    AlreadyIssued,
    AlreadyRevoked,
    AttendanceCredentialError,
    DuplicateForDay,
    DuplicateSubject,
    InsufficientAttendance,
    InvalidCardUid,
    InvalidSignature,
    MalformedCredential,
    NotFound,
    UnknownSubject,
)
from .identity_registry import DIDRecord, IdentityRegistry, KeyVersion, RegistrySnapshot, Subject
from .key_manager import KeyManager, KeyPair
from .storage import InMemoryStore, Store, SystemClock

__version__ = "1.0.0"
__all__ = [
    # Identity
    "IdentityRegistry",
    "DIDRecord",
    "KeyVersion",
    "Subject",
    "RegistrySnapshot",

    # Keys
    "KeyManager",
    "KeyPair",

    # Attendance
    "AttendanceLedger",
    "AttendanceEvent",

    # Credentials
    "CredentialIssuer",
    "CredentialVerifier",
    "Credential",
    "AttendanceClaims",
    "CredentialStatus",
    "SubjectState",
    "IssuancePolicy",
    "RevocationEntry",
    "RevocationList",
    "VerificationResult",
    "VerificationFailure",

    # Service
    "AttendanceCredentialService",
    "AttendanceReceipt",

    # Infrastructure
    "CoreSettings",
    "configure_logging",
    "Store",
    "InMemoryStore",
    "SystemClock",

    # Errors
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
