"""
Verifiable Credentials Issuer
=============================

Cấp Verifiable Credentials cho kết quả điểm danh (attendance)
theo chuẩn W3C Verifiable Credentials Data Model 1.1

Reference: https://www.w3.org/TR/vc-data-model/

Signed payload: canonical JSON of
``{credentialId, issuerDid, subjectDid, claims}``. The credential id is part
of the signed bytes so a revoked credential cannot be re-presented under a
new id; verifiers that sign only ``{issuerDid, subjectDid, claims}`` will not
accept these proofs.
"""

import json
import logging
import math
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .attendance_ledger import AttendanceLedger
from .canonical import canonicalize
from .errors import (
    AlreadyIssued,
    AlreadyRevoked,
    InsufficientAttendance,
    MalformedCredential,
    NotFound,
    UnknownSubject,
)
from .identity_registry import IdentityRegistry, KeyVersion
from .key_manager import PROOF_TYPES
from .storage import Store

logger = logging.getLogger(__name__)

CREDENTIALS = "credentials"
ACTIVE_CREDENTIALS = "active_credentials"
REVOCATIONS = "revocations"

CREDENTIAL_CONTEXT = [
    "https://www.w3.org/2018/credentials/v1",
    "https://www.w3.org/2018/credentials/examples/v1"
]
CREDENTIAL_TYPE = "AttendanceCredential"


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class CredentialStatus(Enum):
    VALID = "Valid"
    REVOKED = "Revoked"


class SubjectState(Enum):
    """Per-subject issuance state"""
    INELIGIBLE = "Ineligible"
    ELIGIBLE = "Eligible"
    ISSUED = "Issued"
    REVOKED = "Revoked"


@dataclass(frozen=True)
class IssuancePolicy:
    """Minimum attendance ratio and the number of sessions it is measured against"""
    threshold: float = 0.80
    sessions_required: int = 10

    def __post_init__(self):
        if not 0 < self.threshold <= 1:
            raise ValueError(f"threshold must be in (0, 1] (got {self.threshold!r})")
        if self.sessions_required <= 0:
            raise ValueError(f"sessions_required must be positive (got {self.sessions_required!r})")

    @classmethod
    def from_settings(cls, settings) -> "IssuancePolicy":
        return cls(threshold=settings.THRESHOLD, sessions_required=settings.SESSIONS_REQUIRED)

    def sessions_needed(self, sessions_attended: int) -> int:
        """Sessions still missing before the threshold is reached"""
        needed = 0
        while (sessions_attended + needed) / self.sessions_required < self.threshold:
            needed += 1
        return needed


@dataclass(frozen=True)
class AttendanceClaims:
    attendance_ratio: float
    sessions_attended: int
    sessions_required: int
    issued_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attendanceRatio": self.attendance_ratio,
            "sessionsAttended": self.sessions_attended,
            "sessionsRequired": self.sessions_required,
            "issuedAt": self.issued_at,
        }


def _require(data: Dict[str, Any], key: str, kind) -> Any:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, kind):
        raise MalformedCredential(f"Missing or invalid field: {key}", field=key)
    return value


def _finite_ratio(subject: Dict[str, Any]) -> float:
    value = _require(subject, "attendanceRatio", (int, float))
    try:
        ratio = float(value)
    except OverflowError:
        ratio = math.inf
    if not math.isfinite(ratio):
        raise MalformedCredential("attendanceRatio must be a finite number", field="attendanceRatio")
    return ratio


@dataclass(frozen=True)
class Credential:
    """
    Signed attendance credential

    ``signature`` covers the canonical form of ``signing_payload()``;
    ``status`` is issuer-side bookkeeping and is not signed.
    """
    credential_id: str
    subject_did: str
    issuer_did: str
    claims: AttendanceClaims
    signature: str
    verification_method: str  # Issuer key id used for signing
    proof_type: str
    status: CredentialStatus = CredentialStatus.VALID
    revoked_at: Optional[int] = None

    def signing_payload(self) -> Dict[str, Any]:
        return {
            "credentialId": self.credential_id,
            "issuerDid": self.issuer_did,
            "subjectDid": self.subject_did,
            "claims": self.claims.to_dict(),
        }

    def signing_bytes(self) -> bytes:
        return canonicalize(self.signing_payload())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to W3C VC JSON format"""
        vc = {
            "@context": CREDENTIAL_CONTEXT,
            "id": self.credential_id,
            "type": ["VerifiableCredential", CREDENTIAL_TYPE],
            "issuer": self.issuer_did,
            "issuanceDate": _iso(self.claims.issued_at),
            "credentialSubject": {"id": self.subject_did, **self.claims.to_dict()},
            "proof": {
                "type": self.proof_type,
                "created": _iso(self.claims.issued_at),
                "verificationMethod": self.verification_method,
                "proofPurpose": "assertionMethod",
                "proofValue": self.signature,
            },
            "credentialStatus": {"type": "AttendanceRevocationList", "status": self.status.value},
        }
        if self.revoked_at is not None:
            vc["credentialStatus"]["revokedAt"] = _iso(self.revoked_at)
        return vc

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Any) -> "Credential":
        """
        Parse the wire form produced by ``to_dict``

        Raises:
            MalformedCredential: required fields missing or mistyped
        """
        if not isinstance(data, dict):
            raise MalformedCredential("Credential must be a JSON object")

        types = data.get("type")
        if not isinstance(types, list) or "VerifiableCredential" not in types:
            raise MalformedCredential("Invalid or missing credential type", field="type")

        subject = data.get("credentialSubject")
        proof = data.get("proof")
        if not isinstance(subject, dict):
            raise MalformedCredential("Missing credential subject", field="credentialSubject")
        if not isinstance(proof, dict):
            raise MalformedCredential("Missing proof", field="proof")

        claims = AttendanceClaims(
            attendance_ratio=_finite_ratio(subject),
            sessions_attended=_require(subject, "sessionsAttended", int),
            sessions_required=_require(subject, "sessionsRequired", int),
            issued_at=_require(subject, "issuedAt", int),
        )

        status_data = data.get("credentialStatus") or {}
        try:
            status = CredentialStatus(status_data.get("status", CredentialStatus.VALID.value))
        except (AttributeError, ValueError):
            raise MalformedCredential("Invalid credential status", field="credentialStatus") from None

        return cls(
            credential_id=_require(data, "id", str),
            subject_did=_require(subject, "id", str),
            issuer_did=_require(data, "issuer", str),
            claims=claims,
            signature=_require(proof, "proofValue", str),
            verification_method=_require(proof, "verificationMethod", str),
            proof_type=_require(proof, "type", str),
            status=status,
        )

    @classmethod
    def from_json(cls, text: str) -> "Credential":
        try:
            return cls.from_dict(json.loads(text))
        except json.JSONDecodeError as e:
            raise MalformedCredential(f"Invalid JSON: {e}") from None


@dataclass(frozen=True)
class RevocationEntry:
    credential_id: str
    revoked_at: int
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"credentialId": self.credential_id, "revokedAt": self.revoked_at, "reason": self.reason}


@dataclass(frozen=True)
class RevocationList:
    """Issuer-signed snapshot of the revocation set"""
    issuer_did: str
    entries: Tuple[RevocationEntry, ...]
    issued_at: int
    verification_method: str
    signature: str

    @property
    def revoked_ids(self) -> frozenset:
        return frozenset(entry.credential_id for entry in self.entries)

    def signing_payload(self) -> Dict[str, Any]:
        return {
            "issuerDid": self.issuer_did,
            "issuedAt": self.issued_at,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def signing_bytes(self) -> bytes:
        return canonicalize(self.signing_payload())

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.signing_payload(),
            "verificationMethod": self.verification_method,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RevocationList":
        return cls(
            issuer_did=data["issuerDid"],
            entries=tuple(
                RevocationEntry(e["credentialId"], e["revokedAt"], e.get("reason", ""))
                for e in data["entries"]
            ),
            issued_at=data["issuedAt"],
            verification_method=data["verificationMethod"],
            signature=data["signature"],
        )


class CredentialIssuer:
    """
    Issues attendance credentials

    Features:
    - Eligibility checks against the issuance policy
    - Issue signed credentials, at most one valid per subject
    - Revoke credentials (append-only revocation history)
    - Export a signed revocation list for offline verifiers
    - Rotate the issuer signing key
    """

    def __init__(
        self,
        issuer_did: str,
        registry: IdentityRegistry,
        ledger: AttendanceLedger,
        store: Store,
        policy: Optional[IssuancePolicy] = None,
    ):
        self.issuer_did = issuer_did
        self.registry = registry
        self.ledger = ledger
        self.store = store
        self.policy = policy or IssuancePolicy()
        self.key_manager = registry.key_manager
        self.clock = registry.clock

    # ==================== ELIGIBILITY ====================

    def _ratio(self, subject_did: str) -> float:
        return self.ledger.attendance_ratio(subject_did, self.policy.sessions_required)

    def status_for(self, subject_did: str) -> SubjectState:
        if self.store.get(ACTIVE_CREDENTIALS, subject_did) is not None:
            return SubjectState.ISSUED
        # Revoked stays visible until a new credential is issued
        if any(c.status is CredentialStatus.REVOKED for c in self.list_credentials(subject_did)):
            return SubjectState.REVOKED
        if self._ratio(subject_did) >= self.policy.threshold:
            return SubjectState.ELIGIBLE
        return SubjectState.INELIGIBLE

    def check_eligibility(self, subject_did: str) -> Dict[str, Any]:
        ratio = self._ratio(subject_did)
        attended = self.ledger.count_for(subject_did)
        has_credential = self.store.get(ACTIVE_CREDENTIALS, subject_did) is not None
        return {
            "did": subject_did,
            "attendanceRatio": ratio,
            "sessionsAttended": attended,
            "requiredRatio": self.policy.threshold,
            "hasCredential": has_credential,
            "eligible": ratio >= self.policy.threshold and not has_credential,
            "sessionsNeeded": self.policy.sessions_needed(attended),
            "state": self.status_for(subject_did).value,
        }

    # ==================== CREDENTIAL ISSUANCE ====================

    def issue(self, subject_did: str) -> Credential:
        """
        Issue a credential from the subject's current ledger state

        Raises:
            UnknownSubject: subject DID does not resolve
            AlreadyIssued: subject already holds a valid credential
            InsufficientAttendance: ratio below the policy threshold
        """
        if not self.registry.exists(subject_did):
            raise UnknownSubject(f"Unknown subject: {subject_did}", did=subject_did)

        if self.store.get(ACTIVE_CREDENTIALS, subject_did) is not None:
            logger.warning("Rejected issuance for %s: already issued", subject_did)
            raise AlreadyIssued(f"Valid credential already issued to {subject_did}", did=subject_did)

        # Re-read at call time; eligibility is never cached
        attended = self.ledger.count_for(subject_did)
        ratio = self._ratio(subject_did)
        if ratio < self.policy.threshold:
            logger.warning("Rejected issuance for %s: ratio %.2f below %.2f",
                           subject_did, ratio, self.policy.threshold)
            raise InsufficientAttendance(
                f"Attendance ratio {ratio:.2f} below required {self.policy.threshold:.2f}",
                did=subject_did,
                attendance_ratio=ratio,
                threshold=self.policy.threshold,
            )

        claims = AttendanceClaims(
            attendance_ratio=ratio,
            sessions_attended=attended,
            sessions_required=self.policy.sessions_required,
            issued_at=self.clock.now_ms(),
        )
        credential = self._sign_credential(subject_did, claims)

        if not self.store.put_if_absent(ACTIVE_CREDENTIALS, subject_did, credential.credential_id):
            logger.warning("Rejected issuance for %s: lost concurrent issuance", subject_did)
            raise AlreadyIssued(f"Valid credential already issued to {subject_did}", did=subject_did)
        self.store.put_if_absent(CREDENTIALS, credential.credential_id, credential)

        logger.info("Issued credential %s to %s", credential.credential_id, subject_did)
        return credential

    def _signing_key(self) -> KeyVersion:
        return self.registry.resolve(self.issuer_did).current_key

    def _sign_credential(self, subject_did: str, claims: AttendanceClaims) -> Credential:
        key = self._signing_key()
        unsigned = Credential(
            credential_id=f"urn:uuid:{uuid.uuid4()}",
            subject_did=subject_did,
            issuer_did=self.issuer_did,
            claims=claims,
            signature="",
            verification_method=key.key_id,
            proof_type=PROOF_TYPES[key.key_type],
        )
        signature = self.key_manager.sign(key.key_id, unsigned.signing_bytes())
        return replace(unsigned, signature=signature)

    # ==================== REVOCATION ====================

    def revoke(self, credential_id: str, reason: str = "") -> RevocationEntry:
        """
        Revoke a credential

        Raises:
            NotFound: unknown credential id
            AlreadyRevoked: credential was revoked before
        """
        credential = self.store.get(CREDENTIALS, credential_id)
        if credential is None:
            raise NotFound(f"Credential not found: {credential_id}", credential_id=credential_id)

        if credential.status is CredentialStatus.REVOKED:
            raise AlreadyRevoked(f"Credential already revoked: {credential_id}",
                                 credential_id=credential_id)

        now = self.clock.now_ms()
        revoked = replace(credential, status=CredentialStatus.REVOKED, revoked_at=now)
        if not self.store.compare_and_swap(CREDENTIALS, credential_id, credential, revoked):
            raise AlreadyRevoked(f"Credential already revoked: {credential_id}",
                                 credential_id=credential_id)

        entry = RevocationEntry(credential_id=credential_id, revoked_at=now, reason=reason)
        self.store.put_if_absent(REVOCATIONS, credential_id, entry)
        self.store.compare_and_swap(ACTIVE_CREDENTIALS, credential.subject_did, credential_id, None)

        logger.info("Revoked credential %s (%s)", credential_id, reason or "no reason given")
        return entry

    def is_revoked(self, credential_id: str) -> bool:
        """Check if credential is revoked"""
        return self.store.get(REVOCATIONS, credential_id) is not None

    def revocation_entries(self) -> List[RevocationEntry]:
        entries = [entry for _, entry in self.store.scan(REVOCATIONS)]
        return sorted(entries, key=lambda e: (e.revoked_at, e.credential_id))

    def export_revocation_list(self) -> RevocationList:
        """Sign the current revocation set for distribution to verifiers"""
        key = self._signing_key()
        unsigned = RevocationList(
            issuer_did=self.issuer_did,
            entries=tuple(self.revocation_entries()),
            issued_at=self.clock.now_ms(),
            verification_method=key.key_id,
            signature="",
        )
        return replace(unsigned, signature=self.key_manager.sign(key.key_id, unsigned.signing_bytes()))

    # ==================== KEYS ====================

    def rotate_signing_key(self, key_type: Optional[str] = None) -> KeyVersion:
        """Generate a new issuer key; earlier credentials stay verifiable"""
        keypair = self.key_manager.generate_keypair(key_type or self._signing_key().key_type)
        version = self.registry.rotate_key(self.issuer_did, keypair.public_key, keypair.key_type)
        self.key_manager.store(version.key_id, keypair)
        return version

    # ==================== UTILITIES ====================

    def get_credential(self, credential_id: str) -> Credential:
        credential = self.store.get(CREDENTIALS, credential_id)
        if credential is None:
            raise NotFound(f"Credential not found: {credential_id}", credential_id=credential_id)
        return credential

    def active_credential(self, subject_did: str) -> Optional[Credential]:
        credential_id = self.store.get(ACTIVE_CREDENTIALS, subject_did)
        return self.store.get(CREDENTIALS, credential_id) if credential_id else None

    def list_credentials(self, subject_did: Optional[str] = None) -> List[Credential]:
        """List issued credentials, optionally filtered by subject"""
        credentials = [c for _, c in self.store.scan(CREDENTIALS)]
        if subject_did:
            credentials = [c for c in credentials if c.subject_did == subject_did]
        return sorted(credentials, key=lambda c: c.claims.issued_at)

    def get_statistics(self) -> Dict[str, Any]:
        """Get issuer statistics"""
        credentials = self.list_credentials()
        valid = sum(1 for c in credentials if c.status is CredentialStatus.VALID)
        average = (
            sum(c.claims.attendance_ratio for c in credentials) / len(credentials)
            if credentials else 0.0
        )
        return {
            "total_issued": len(credentials),
            "valid": valid,
            "revoked": len(credentials) - valid,
            "average_attendance_ratio": round(average, 4),
        }
