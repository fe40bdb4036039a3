"""
Attendance Credential Service
=============================

Tích hợp các thành phần của core thành một call surface duy nhất cho
hosting layer (HTTP, CLI, NFC reader daemon):
- Identity Registry
- Attendance Ledger
- Credential Issuer / Verifier

Components are built once here and shared by reference; nothing in the
package keeps module-level state.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from .attendance_ledger import AttendanceEvent, AttendanceLedger
from .cards import detect_card_type, normalize_card_uid
from .config import CoreSettings
from .credential_issuer import (
    Credential,
    CredentialIssuer,
    IssuancePolicy,
    RevocationEntry,
    RevocationList,
    SubjectState,
)
from .credential_verifier import CredentialVerifier, VerificationResult
from .errors import AlreadyIssued
from .identity_registry import DIDRecord, IdentityRegistry
from .key_manager import KeyManager
from .storage import Clock, InMemoryStore, Store, SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttendanceReceipt:
    """Outcome of one attendance mark"""
    event: AttendanceEvent
    attendance_ratio: float
    credential: Optional[Credential] = None  # Set when auto-issuance fired

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record": self.event.to_dict(),
            "attendanceRatio": self.attendance_ratio,
            "credentialIssued": self.credential is not None,
            "credential": self.credential.to_dict() if self.credential else None,
        }


class AttendanceCredentialService:
    """
    Main service class for attendance credentials

    Provides a unified interface for:
    - Identity creation (including NFC card enrollment)
    - Attendance recording
    - Credential issuance and revocation
    - Credential verification
    """

    def __init__(
        self,
        settings: Optional[CoreSettings] = None,
        store: Optional[Store] = None,
        clock: Optional[Clock] = None,
        key_manager: Optional[KeyManager] = None,
    ):
        """
        Initialize the service

        Args:
            settings: Core settings, read from the environment when omitted
            store: Persistence backend shared by every component
            clock: Millisecond clock, ``SystemClock`` by default
            key_manager: Holder of private keys
        """
        self.settings = settings or CoreSettings()
        self.store = store or InMemoryStore()
        self.clock = clock or SystemClock()
        self.key_manager = key_manager or KeyManager()

        self.registry = IdentityRegistry(
            key_manager=self.key_manager,
            store=self.store,
            clock=self.clock,
            method=self.settings.DID_METHOD,
        )
        self.ledger = AttendanceLedger(self.registry, self.store, course_id=self.settings.COURSE_ID)
        self.policy = IssuancePolicy.from_settings(self.settings)

        # Create Issuer DID
        if self.settings.ISSUER_PRIVATE_KEY:
            issuer_keypair = self.key_manager.from_ethereum_key(self.settings.ISSUER_PRIVATE_KEY)
        else:
            issuer_keypair = self.key_manager.generate_keypair(self.settings.ISSUER_KEY_TYPE)
        issuer_record = self.registry.create_identity(
            display_attributes={"role": "issuer", "course": self.settings.COURSE_ID},
            keypair=issuer_keypair,
            register_subject=False,
        )
        self.issuer_did = issuer_record.did

        self.credential_issuer = CredentialIssuer(
            issuer_did=self.issuer_did,
            registry=self.registry,
            ledger=self.ledger,
            store=self.store,
            policy=self.policy,
        )
        self.credential_verifier = CredentialVerifier(
            resolver=self.registry,
            key_manager=self.key_manager,
            trusted_issuers=[self.issuer_did],
            revocation_source=self.credential_issuer,
        )
        logger.info("Attendance credential service ready (issuer %s)", self.issuer_did)

    # ==================== IDENTITY ====================

    def create_identity(
        self,
        external_id: Optional[str] = None,
        display_attributes: Optional[Mapping[str, Any]] = None,
    ) -> DIDRecord:
        return self.registry.create_identity(
            external_id=external_id, display_attributes=display_attributes
        )

    def enroll_card(self, card_uid: str, display_attributes: Optional[Mapping[str, Any]] = None) -> DIDRecord:
        """
        Create an identity bound to an NFC card

        Raises:
            InvalidCardUid: UID is not 8-16 hex characters
            DuplicateSubject: card already enrolled
        """
        uid = normalize_card_uid(card_uid)
        attributes = dict(display_attributes or {})
        attributes.setdefault("cardType", detect_card_type(uid))
        return self.registry.create_identity(external_id=uid, display_attributes=attributes)

    def resolve_did(self, did: str) -> DIDRecord:
        return self.registry.resolve(did)

    def get_did_document(self, did: str) -> Dict[str, Any]:
        return self.registry.to_document(did)

    # ==================== ATTENDANCE ====================

    def record_attendance(
        self,
        did: str,
        timestamp: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> AttendanceReceipt:
        """
        Record attendance for ``did``

        With AUTO_ISSUE enabled, the first mark that makes the subject
        eligible also issues the credential.
        """
        event = self.ledger.record_event(
            did, self.clock.now_ms() if timestamp is None else timestamp, session_id
        )
        ratio = self.get_attendance_ratio(did)

        credential = None
        if self.settings.AUTO_ISSUE and self.credential_issuer.status_for(did) is SubjectState.ELIGIBLE:
            try:
                credential = self.credential_issuer.issue(did)
            except AlreadyIssued:
                # A concurrent mark already issued it
                credential = None

        return AttendanceReceipt(event=event, attendance_ratio=ratio, credential=credential)

    def record_attendance_by_card(self, card_uid: str, timestamp: Optional[int] = None) -> AttendanceReceipt:
        subject = self.registry.find_by_external_id(normalize_card_uid(card_uid))
        return self.record_attendance(subject.did, timestamp)

    def get_attendance_ratio(self, did: str) -> float:
        return self.ledger.attendance_ratio(did, self.policy.sessions_required)

    def get_attendance(self, did: str) -> Dict[str, Any]:
        return self.ledger.attendance_summary(did, self.policy.sessions_required)

    def attendance_history(self) -> List[Dict[str, Any]]:
        """Per-subject attendance overview, most sessions first"""
        history = []
        for subject in self.registry.list_subjects():
            summary = self.get_attendance(subject.did)
            history.append({
                "did": subject.did,
                "displayAttributes": dict(subject.display_attributes),
                "sessionsAttended": summary["sessionsAttended"],
                "attendanceRatio": summary["attendanceRatio"],
                "lastAttendance": summary["lastAttendance"],
                "credentialIssued": self.credential_issuer.active_credential(subject.did) is not None,
            })
        return sorted(history, key=lambda h: h["sessionsAttended"], reverse=True)

    # ==================== CREDENTIALS ====================

    def check_eligibility(self, did: str) -> Dict[str, Any]:
        return self.credential_issuer.check_eligibility(did)

    def issue_credential(self, did: str) -> Credential:
        return self.credential_issuer.issue(did)

    def revoke_credential(self, credential_id: str, reason: str = "") -> RevocationEntry:
        return self.credential_issuer.revoke(credential_id, reason)

    def get_credentials(self, did: str) -> List[Credential]:
        self.registry.resolve(did)
        return self.credential_issuer.list_credentials(did)

    def verify_credential(self, credential: Union[Credential, Dict[str, Any], str]) -> VerificationResult:
        """Verify a credential object, its dict form, or its JSON text"""
        if isinstance(credential, str):
            return self.credential_verifier.verify_json(credential)
        return self.credential_verifier.verify(credential)

    def export_revocation_list(self) -> RevocationList:
        return self.credential_issuer.export_revocation_list()

    # ==================== STATISTICS ====================

    def get_statistics(self) -> Dict[str, Any]:
        """Get overall system statistics"""
        subjects = self.registry.list_subjects()
        total_attendance = sum(self.ledger.count_for(s.did) for s in subjects)
        with_credentials = sum(
            1 for s in subjects if self.credential_issuer.active_credential(s.did) is not None
        )
        possible = len(subjects) * self.policy.sessions_required
        return {
            "issuer": {"did": self.issuer_did},
            "totalSubjects": len(subjects),
            "totalAttendance": total_attendance,
            "averageAttendance": round(total_attendance / len(subjects), 2) if subjects else 0,
            "subjectsWithCredentials": with_credentials,
            "overallAttendanceRatio": round(total_attendance / possible, 4) if possible else 0.0,
            "sessionsRequired": self.policy.sessions_required,
            "dids": self.registry.get_statistics(),
            "credentials": self.credential_issuer.get_statistics(),
        }
