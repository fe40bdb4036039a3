"""
Verifiable Credentials Verifier
================================

Xác thực attendance credentials theo chuẩn W3C

Checks, in order (the first failure is reported):
1. Structure
2. Issuer trust and signature
3. Revocation status
4. Subject binding

Verification works offline: the verifier needs a resolver for DIDs (the
live registry or a ``RegistrySnapshot``) and a revocation set (the live
issuer or signed ``RevocationList`` snapshots).
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Union

from .credential_issuer import Credential, RevocationList
from .errors import InvalidSignature, MalformedCredential, NotFound
from .identity_registry import DIDRecord
from .key_manager import PROOF_TYPES, KeyManager

logger = logging.getLogger(__name__)


class DIDResolver(Protocol):
    def resolve(self, did: str) -> DIDRecord: ...


class RevocationSource(Protocol):
    def is_revoked(self, credential_id: str) -> bool: ...


class VerificationFailure(Enum):
    """Reason a credential failed verification"""
    MALFORMED_CREDENTIAL = "MalformedCredential"
    UNTRUSTED_ISSUER = "UntrustedIssuer"
    INVALID_SIGNATURE = "InvalidSignature"
    REVOKED = "Revoked"
    UNKNOWN_SUBJECT = "UnknownSubject"


@dataclass
class VerificationResult:
    """Result of credential verification"""
    valid: bool
    reason: Optional[VerificationFailure] = None
    credential_id: str = ""
    issuer: str = ""
    subject: str = ""
    checks: Dict[str, bool] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    verified_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason.value if self.reason else None,
            "credentialId": self.credential_id,
            "issuer": self.issuer,
            "subject": self.subject,
            "checks": self.checks,
            "errors": self.errors,
            "verifiedAt": self.verified_at,
        }


class CredentialVerifier:
    """
    Verifies attendance credentials without contacting the issuer
    """

    def __init__(
        self,
        resolver: DIDResolver,
        key_manager: Optional[KeyManager] = None,
        trusted_issuers: Optional[Iterable[str]] = None,
        revocation_source: Optional[RevocationSource] = None,
    ):
        self.resolver = resolver
        self.key_manager = key_manager or KeyManager()
        self.trusted_issuers: Set[str] = set(trusted_issuers or [])
        self.revocation_source = revocation_source
        self._revocation_lists: Dict[str, frozenset] = {}

    # ==================== VERIFICATION ====================

    def verify(self, credential: Union[Credential, Dict[str, Any]]) -> VerificationResult:
        """
        Verify a credential object or its W3C JSON form

        Returns:
            VerificationResult; ``reason`` names the first failing check
        """
        checks = {"structure": False, "signature": False, "revocation": False, "subject": False}

        # 1. Structure validation
        try:
            if not isinstance(credential, Credential):
                credential = Credential.from_dict(credential)
            self._validate_structure(credential)
        except MalformedCredential as e:
            return self._result(VerificationFailure.MALFORMED_CREDENTIAL, None, checks, [e.message])
        checks["structure"] = True

        # 2. Issuer trust and signature
        if self.trusted_issuers and credential.issuer_did not in self.trusted_issuers:
            return self._result(VerificationFailure.UNTRUSTED_ISSUER, credential, checks,
                                [f"Issuer {credential.issuer_did} is not trusted"])

        sig_error = self._verify_signature(credential)
        if sig_error:
            return self._result(VerificationFailure.INVALID_SIGNATURE, credential, checks, [sig_error])
        checks["signature"] = True

        # 3. Revocation
        if self._check_revocation(credential):
            return self._result(VerificationFailure.REVOKED, credential, checks,
                                ["Credential has been revoked"])
        checks["revocation"] = True

        # 4. Subject binding
        try:
            self.resolver.resolve(credential.subject_did)
        except NotFound:
            return self._result(VerificationFailure.UNKNOWN_SUBJECT, credential, checks,
                                [f"Subject DID does not resolve: {credential.subject_did}"])
        checks["subject"] = True

        return self._result(None, credential, checks, [])

    def verify_json(self, credential_json: str) -> VerificationResult:
        """Verify credential from JSON string"""
        try:
            data = json.loads(credential_json)
        except json.JSONDecodeError as e:
            return self._result(VerificationFailure.MALFORMED_CREDENTIAL, None, {}, [f"Invalid JSON: {e}"])
        return self.verify(data)

    # ==================== VALIDATION HELPERS ====================

    def _validate_structure(self, credential: Credential):
        if not credential.credential_id:
            raise MalformedCredential("Missing credential ID")
        if not credential.issuer_did or not credential.subject_did:
            raise MalformedCredential("Missing issuer or subject")
        if not credential.signature:
            raise MalformedCredential("Missing proof value")
        if not credential.verification_method.startswith(f"{credential.issuer_did}#"):
            raise MalformedCredential("Verification method does not belong to issuer")
        try:
            credential.signing_bytes()
        except ValueError as e:
            raise MalformedCredential(f"Credential cannot be canonicalized: {e}") from None

    def _verify_signature(self, credential: Credential) -> Optional[str]:
        """Return an error message, or None when the signature holds"""
        try:
            issuer = self.resolver.resolve(credential.issuer_did)
        except NotFound:
            return f"Could not resolve issuer DID: {credential.issuer_did}"

        key = issuer.key_version(credential.verification_method)
        if key is None:
            return f"Verification method not found: {credential.verification_method}"
        if not key.is_active:
            return f"Verification method superseded: {credential.verification_method}"
        if PROOF_TYPES.get(key.key_type) != credential.proof_type:
            return f"Proof type {credential.proof_type} does not match key type {key.key_type}"

        if not self.key_manager.verify(key.key_type, key.public_key,
                                       credential.signing_bytes(), credential.signature):
            return "Signature verification failed"
        return None

    def _check_revocation(self, credential: Credential) -> bool:
        """Check if credential is revoked"""
        if credential.credential_id in self._revocation_lists.get(credential.issuer_did, ()):
            return True
        if self.revocation_source is not None:
            return self.revocation_source.is_revoked(credential.credential_id)
        return False

    def _result(
        self,
        reason: Optional[VerificationFailure],
        credential: Optional[Credential],
        checks: Dict[str, bool],
        errors: List[str],
    ) -> VerificationResult:
        if reason is not None:
            logger.info("Credential %s rejected: %s",
                        credential.credential_id if credential else "<unparsed>", reason.value)
        return VerificationResult(
            valid=reason is None,
            reason=reason,
            credential_id=credential.credential_id if credential else "",
            issuer=credential.issuer_did if credential else "",
            subject=credential.subject_did if credential else "",
            checks=checks,
            errors=errors,
            verified_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )

    # ==================== TRUST MANAGEMENT ====================

    def add_trusted_issuer(self, issuer_did: str):
        """Add issuer to trusted list"""
        self.trusted_issuers.add(issuer_did)

    def remove_trusted_issuer(self, issuer_did: str):
        """Remove issuer from trusted list"""
        self.trusted_issuers.discard(issuer_did)

    def is_trusted_issuer(self, issuer_did: str) -> bool:
        return issuer_did in self.trusted_issuers

    # ==================== REVOCATION MANAGEMENT ====================

    def load_revocation_list(self, revocation_list: Union[RevocationList, Dict[str, Any]]) -> int:
        """
        Accept a signed revocation list from an issuer

        Entries are merged with earlier lists; a revocation is never undone.

        Returns:
            Number of credential ids now known revoked for that issuer

        Raises:
            InvalidSignature: list signature does not verify against the issuer key
        """
        if not isinstance(revocation_list, RevocationList):
            try:
                revocation_list = RevocationList.from_dict(revocation_list)
            except (KeyError, TypeError) as e:
                raise InvalidSignature(f"Malformed revocation list: {e}") from None

        try:
            issuer = self.resolver.resolve(revocation_list.issuer_did)
        except NotFound:
            raise InvalidSignature(f"Unknown issuer: {revocation_list.issuer_did}") from None

        key = issuer.key_version(revocation_list.verification_method)
        if key is None or not key.is_active or not self.key_manager.verify(
            key.key_type, key.public_key, revocation_list.signing_bytes(), revocation_list.signature
        ):
            raise InvalidSignature("Revocation list signature verification failed",
                                   issuer=revocation_list.issuer_did)

        merged = self._revocation_lists.get(revocation_list.issuer_did, frozenset()) \
            | revocation_list.revoked_ids
        self._revocation_lists[revocation_list.issuer_did] = merged
        return len(merged)
