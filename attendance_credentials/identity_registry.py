"""
Identity Registry - Tạo và quản lý DIDs cho Attendance Credential Core

DID Format: did:<method>:<first 32 hex chars of sha256(public key)>

Reference: https://www.w3.org/TR/did-core/
"""

import hashlib
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import DuplicateSubject, NotFound
from .key_manager import ED25519, KeyManager, KeyPair, b64url_encode
from .storage import Clock, InMemoryStore, Store, SystemClock

logger = logging.getLogger(__name__)

DIDS = "dids"
SUBJECTS = "subjects"
EXTERNAL_IDS = "external_ids"


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class KeyVersion:
    """One entry in a DID's key history"""
    version: int
    key_id: str  # <did>#key-<version>
    key_type: str
    public_key: bytes
    created_at: int
    superseded_at: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.superseded_at is None

    def to_verification_method(self, controller: str) -> Dict[str, Any]:
        """Convert to W3C Verification Method format"""
        return {
            "id": self.key_id,
            "type": self.key_type,
            "controller": controller,
            "publicKeyMultibase": f"u{b64url_encode(self.public_key)}",
        }


@dataclass(frozen=True)
class DIDRecord:
    """
    Registry entry for one DID

    Never mutated in place: rotation and supersession produce a new
    record carrying the extended key history.
    """
    did: str
    controller_did: str
    created_at: int
    key_versions: Tuple[KeyVersion, ...]

    @property
    def current_key(self) -> KeyVersion:
        return self.key_versions[-1]

    @property
    def public_key(self) -> bytes:
        return self.current_key.public_key

    def key_version(self, key_id: str) -> Optional[KeyVersion]:
        for version in self.key_versions:
            if version.key_id == key_id:
                return version
        return None

    def to_document(self) -> Dict[str, Any]:
        """Convert to W3C DID Document JSON format"""
        active = [v for v in self.key_versions if v.is_active]
        return {
            "@context": [
                "https://www.w3.org/ns/did/v1",
                "https://w3id.org/security/suites/ed25519-2020/v1",
                "https://w3id.org/security/suites/secp256k1-2019/v1"
            ],
            "id": self.did,
            "controller": self.controller_did,
            "verificationMethod": [v.to_verification_method(self.controller_did) for v in active],
            "authentication": [self.current_key.key_id],
            "assertionMethod": [v.key_id for v in active],
            "created": _iso(self.created_at),
            "updated": _iso(max(v.superseded_at or v.created_at for v in self.key_versions)),
        }


@dataclass(frozen=True)
class Subject:
    did: str
    external_id: Optional[str] = None  # e.g. NFC card UID
    display_attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "did": self.did,
            "externalId": self.external_id,
            "displayAttributes": dict(self.display_attributes),
        }


class RegistrySnapshot:
    """
    Read-only copy of the registry's public key material

    Lets a verifier resolve DIDs without access to the live registry.
    """

    def __init__(self, records: Mapping[str, DIDRecord]):
        self._records = MappingProxyType(dict(records))

    def resolve(self, did: str) -> DIDRecord:
        record = self._records.get(did)
        if record is None:
            raise NotFound(f"DID not found: {did}", did=did)
        return record

    def __contains__(self, did: str) -> bool:
        return did in self._records

    def __len__(self) -> int:
        return len(self._records)


class IdentityRegistry:
    """
    Issues and resolves DIDs

    Features:
    - Create DIDs bound to freshly generated keys
    - Resolve DIDs to their records and key versions
    - Rotate keys and supersede old versions
    - Bind an external identifier (card UID) to exactly one DID
    """

    def __init__(
        self,
        key_manager: Optional[KeyManager] = None,
        store: Optional[Store] = None,
        clock: Optional[Clock] = None,
        method: str = "attend",
    ):
        self.key_manager = key_manager or KeyManager()
        self.store = store or InMemoryStore()
        self.clock = clock or SystemClock()
        self.method = method
        self._rotation_lock = threading.Lock()

    # ==================== DID CREATION ====================

    def derive_did(self, public_key: bytes) -> str:
        return f"did:{self.method}:{hashlib.sha256(public_key).hexdigest()[:32]}"

    def create_identity(
        self,
        external_id: Optional[str] = None,
        display_attributes: Optional[Mapping[str, Any]] = None,
        controller_did: Optional[str] = None,
        key_type: str = ED25519,
        keypair: Optional[KeyPair] = None,
        register_subject: bool = True,
    ) -> DIDRecord:
        """
        Create a new DID with an associated key pair

        Args:
            external_id: External binding such as a card UID, unique across subjects
            display_attributes: Free-form attributes (name, email, ...)
            controller_did: Controlling DID, defaults to the new DID itself
            key_type: Key type to generate when ``keypair`` is not given
            keypair: Existing key pair, e.g. from an Ethereum private key
            register_subject: False for issuer identities that never attend

        Raises:
            DuplicateSubject: external_id or key already registered
            NotFound: controller_did does not resolve
        """
        if controller_did is not None:
            self.resolve(controller_did)

        keypair = keypair or self.key_manager.generate_keypair(key_type)
        did = self.derive_did(keypair.public_key)

        if external_id is not None and not self.store.put_if_absent(EXTERNAL_IDS, external_id, did):
            logger.warning("Rejected identity: external id %s already bound", external_id)
            raise DuplicateSubject(
                f"External id already registered: {external_id}", external_id=external_id
            )

        now = self.clock.now_ms()
        key_id = f"{did}#key-1"
        record = DIDRecord(
            did=did,
            controller_did=controller_did or did,
            created_at=now,
            key_versions=(KeyVersion(1, key_id, keypair.key_type, keypair.public_key, now),),
        )

        if not self.store.put_if_absent(DIDS, did, record):
            if external_id is not None:
                self.store.compare_and_swap(EXTERNAL_IDS, external_id, did, None)
            raise DuplicateSubject(f"Identity already exists for this key: {did}", did=did)

        if keypair.private_key:
            self.key_manager.store(key_id, keypair)

        if register_subject:
            subject = Subject(
                did=did,
                external_id=external_id,
                display_attributes=MappingProxyType(dict(display_attributes or {})),
            )
            self.store.put_if_absent(SUBJECTS, did, subject)

        logger.info("Created identity %s", did)
        return record

    # ==================== DID RESOLUTION ====================

    def resolve(self, did: str) -> DIDRecord:
        """
        Resolve DID to its record

        Raises:
            NotFound: DID is unknown
        """
        record = self.store.get(DIDS, did)
        if record is None:
            raise NotFound(f"DID not found: {did}", did=did)
        return record

    def exists(self, did: str) -> bool:
        return self.store.get(DIDS, did) is not None

    def key_for(self, did: str, key_id: str) -> KeyVersion:
        version = self.resolve(did).key_version(key_id)
        if version is None:
            raise NotFound(f"Key not found: {key_id}", did=did, key_id=key_id)
        return version

    def get_subject(self, did: str) -> Subject:
        subject = self.store.get(SUBJECTS, did)
        if subject is None:
            raise NotFound(f"Subject not found: {did}", did=did)
        return subject

    def find_by_external_id(self, external_id: str) -> Subject:
        did = self.store.get(EXTERNAL_IDS, external_id)
        if did is None:
            raise NotFound(f"No identity bound to {external_id}", external_id=external_id)
        return self.get_subject(did)

    def to_document(self, did: str) -> Dict[str, Any]:
        return self.resolve(did).to_document()

    # ==================== KEY ROTATION ====================

    def rotate_key(self, did: str, new_public_key: bytes, key_type: Optional[str] = None) -> KeyVersion:
        """
        Append a new key version to ``did``

        Signatures made with earlier versions keep verifying until those
        versions are superseded.
        """
        with self._rotation_lock:
            record = self.resolve(did)
            version_no = record.current_key.version + 1
            version = KeyVersion(
                version=version_no,
                key_id=f"{did}#key-{version_no}",
                key_type=key_type or record.current_key.key_type,
                public_key=new_public_key,
                created_at=self.clock.now_ms(),
            )
            updated = replace(record, key_versions=record.key_versions + (version,))
            if not self.store.compare_and_swap(DIDS, did, record, updated):
                raise NotFound(f"DID not found: {did}", did=did)

        logger.info("Rotated key for %s to version %d", did, version_no)
        return version

    def supersede_key(self, did: str, version: int) -> KeyVersion:
        """Stop accepting signatures made with an old key version"""
        with self._rotation_lock:
            record = self.resolve(did)
            if version == record.current_key.version:
                raise ValueError("The current key version cannot be superseded")

            versions = list(record.key_versions)
            for index, existing in enumerate(versions):
                if existing.version == version:
                    break
            else:
                raise NotFound(f"Key version {version} not found for {did}", did=did)

            if existing.superseded_at is not None:
                return existing

            superseded = replace(existing, superseded_at=self.clock.now_ms())
            versions[index] = superseded
            updated = replace(record, key_versions=tuple(versions))
            if not self.store.compare_and_swap(DIDS, did, record, updated):
                raise NotFound(f"DID not found: {did}", did=did)

        logger.info("Superseded key version %d of %s", version, did)
        return superseded

    # ==================== UTILITIES ====================

    def snapshot(self) -> RegistrySnapshot:
        """Export public key material for offline verification"""
        return RegistrySnapshot(dict(self.store.scan(DIDS)))

    def list_subjects(self) -> List[Subject]:
        subjects = [subject for _, subject in self.store.scan(SUBJECTS)]
        return sorted(subjects, key=lambda s: self.resolve(s.did).created_at)

    def get_statistics(self) -> Dict[str, int]:
        """Get statistics about managed DIDs"""
        records = [record for _, record in self.store.scan(DIDS)]
        return {
            "total": len(records),
            "subjects": sum(1 for _ in self.store.scan(SUBJECTS)),
            "bound_external_ids": sum(1 for _ in self.store.scan(EXTERNAL_IDS)),
            "rotated": sum(1 for record in records if len(record.key_versions) > 1),
        }
