"""
Attendance Credential Core Tests
================================

Kiểm thử toàn diện cho từng thành phần của core
"""

import json
import threading
from dataclasses import replace

import pytest

from attendance_credentials.attendance_ledger import DAY_MS, AttendanceLedger, day_bucket_for, event_id_for
from attendance_credentials.credential_issuer import (
    Credential,
    CredentialIssuer,
    CredentialStatus,
    IssuancePolicy,
    SubjectState,
)
from attendance_credentials.credential_verifier import CredentialVerifier, VerificationFailure
from attendance_credentials.errors import (
    AlreadyIssued,
    AlreadyRevoked,
    DuplicateForDay,
    DuplicateSubject,
    InsufficientAttendance,
    InvalidSignature,
    MalformedCredential,
    NotFound,
    UnknownSubject,
)
from attendance_credentials.identity_registry import IdentityRegistry, RegistrySnapshot
from attendance_credentials.key_manager import ED25519, SECP256K1, KeyManager
from attendance_credentials.storage import InMemoryStore

START = 20_000 * DAY_MS  # 2024-10-04T00:00:00Z


class FakeClock:
    def __init__(self, now: int = START):
        self.now = now

    def now_ms(self) -> int:
        return self.now


def build_core(threshold=0.8, sessions_required=10, issuer_key_type=ED25519):
    store = InMemoryStore()
    registry = IdentityRegistry(KeyManager(), store, FakeClock())
    ledger = AttendanceLedger(registry, store, course_id="blockchain-101")
    issuer_record = registry.create_identity(key_type=issuer_key_type, register_subject=False)
    issuer = CredentialIssuer(
        issuer_did=issuer_record.did,
        registry=registry,
        ledger=ledger,
        store=store,
        policy=IssuancePolicy(threshold=threshold, sessions_required=sessions_required),
    )
    return registry, ledger, issuer


def attend(ledger, did, days):
    for day in range(days):
        ledger.record_event(did, START + day * DAY_MS + 9 * 3_600_000)


class TestKeyManager:
    """Test KeyManager functionality"""

    def setup_method(self):
        self.key_manager = KeyManager()

    def test_generate_ed25519(self):
        key = self.key_manager.generate_keypair(ED25519)

        assert key.key_type == ED25519
        assert len(key.public_key) == 32
        assert key.private_key

    def test_generate_secp256k1_from_alias(self):
        key = self.key_manager.generate_keypair("secp256k1")

        assert key.key_type == SECP256K1
        assert len(key.public_key) == 20
        assert key.ethereum_address.startswith("0x")

    def test_sign_and_verify_ed25519(self):
        key = self.key_manager.store("sign-test", self.key_manager.generate_keypair(ED25519))
        message = b"Test message for signing"

        signature = self.key_manager.sign("sign-test", message)

        assert self.key_manager.verify(ED25519, key.public_key, message, signature) is True
        assert self.key_manager.verify(ED25519, key.public_key, b"other", signature) is False

    def test_sign_and_verify_secp256k1(self):
        key = self.key_manager.store("secp-test", self.key_manager.generate_keypair(SECP256K1))
        message = b"Test message for secp256k1"

        signature = self.key_manager.sign("secp-test", message)

        assert self.key_manager.verify(SECP256K1, key.public_key, message, signature) is True
        assert self.key_manager.verify(SECP256K1, key.public_key, b"tampered", signature) is False

    def test_garbage_signature_is_rejected(self):
        key = self.key_manager.generate_keypair(ED25519)
        assert self.key_manager.verify(ED25519, key.public_key, b"x", "not-a-signature") is False
        assert self.key_manager.verify("UnknownKeyType", key.public_key, b"x", "sig") is False

    def test_get_key_hides_private_material(self):
        self.key_manager.store("k", self.key_manager.generate_keypair(ED25519))

        assert self.key_manager.get_key("k").private_key is None
        assert self.key_manager.has_private_key("k")

    def test_key_id_cannot_be_reused(self):
        self.key_manager.store("k", self.key_manager.generate_keypair(ED25519))
        with pytest.raises(ValueError):
            self.key_manager.store("k", self.key_manager.generate_keypair(ED25519))


class TestIdentityRegistry:
    """Test IdentityRegistry functionality"""

    def setup_method(self):
        self.clock = FakeClock()
        self.registry = IdentityRegistry(KeyManager(), InMemoryStore(), self.clock)

    def test_create_identity(self):
        record = self.registry.create_identity(
            external_id="04A1B2C3D4E5F6", display_attributes={"name": "Alice"}
        )

        assert record.did.startswith("did:attend:")
        assert record.did == self.registry.derive_did(record.public_key)
        assert record.controller_did == record.did
        assert record.created_at == START
        assert record.current_key.key_id == f"{record.did}#key-1"

    def test_resolve(self):
        record = self.registry.create_identity()

        assert self.registry.resolve(record.did) == record

    def test_resolve_unknown_did(self):
        with pytest.raises(NotFound):
            self.registry.resolve("did:attend:missing")

    def test_duplicate_external_id(self):
        self.registry.create_identity(external_id="CARD0001")

        with pytest.raises(DuplicateSubject):
            self.registry.create_identity(external_id="CARD0001")
        assert self.registry.get_statistics()["total"] == 1

    def test_find_by_external_id(self):
        record = self.registry.create_identity(external_id="CARD0001", display_attributes={"name": "Bob"})

        subject = self.registry.find_by_external_id("CARD0001")

        assert subject.did == record.did
        assert subject.display_attributes["name"] == "Bob"

    def test_unknown_controller(self):
        with pytest.raises(NotFound):
            self.registry.create_identity(controller_did="did:attend:nobody")

    def test_rotate_key_appends_version(self):
        record = self.registry.create_identity()
        new_key = self.registry.key_manager.generate_keypair(ED25519)
        self.clock.now += 1000

        version = self.registry.rotate_key(record.did, new_key.public_key)

        resolved = self.registry.resolve(record.did)
        assert version.version == 2
        assert len(resolved.key_versions) == 2
        assert resolved.public_key == new_key.public_key
        assert resolved.key_versions[0].public_key == record.public_key
        assert resolved.key_versions[0].is_active
        assert record.did == resolved.did  # DID stays stable across rotation

    def test_supersede_key(self):
        record = self.registry.create_identity()
        new_key = self.registry.key_manager.generate_keypair(ED25519)
        self.registry.rotate_key(record.did, new_key.public_key)

        superseded = self.registry.supersede_key(record.did, 1)

        assert not superseded.is_active
        assert not self.registry.key_for(record.did, f"{record.did}#key-1").is_active
        with pytest.raises(ValueError):
            self.registry.supersede_key(record.did, 2)

    def test_document(self):
        record = self.registry.create_identity()

        doc = self.registry.to_document(record.did)

        assert doc["id"] == record.did
        assert doc["assertionMethod"] == [f"{record.did}#key-1"]
        assert "https://www.w3.org/ns/did/v1" in doc["@context"]

    def test_snapshot_is_detached(self):
        first = self.registry.create_identity()
        snapshot = self.registry.snapshot()
        second = self.registry.create_identity()

        assert snapshot.resolve(first.did) == first
        assert second.did not in snapshot
        with pytest.raises(NotFound):
            snapshot.resolve(second.did)

    def test_issuer_identity_is_not_a_subject(self):
        self.registry.create_identity(register_subject=False)
        self.registry.create_identity()

        assert len(self.registry.list_subjects()) == 1


class TestAttendanceLedger:
    """Test AttendanceLedger functionality"""

    def setup_method(self):
        self.registry, self.ledger, _ = build_core()
        self.did = self.registry.create_identity().did

    def test_day_bucket(self):
        assert day_bucket_for(START) == 20_000
        assert day_bucket_for(START + DAY_MS - 1) == 20_000
        assert day_bucket_for(START + DAY_MS) == 20_001

    def test_record_event(self):
        event = self.ledger.record_event(self.did, START + 5000)

        assert event.day_bucket == 20_000
        assert event.session_id == "blockchain-101:20000"
        assert event.event_id == event_id_for(self.did, 20_000, "blockchain-101:20000")
        assert self.ledger.events_for(self.did) == [event]

    def test_duplicate_for_day(self):
        self.ledger.record_event(self.did, START + 1000)

        with pytest.raises(DuplicateForDay):
            self.ledger.record_event(self.did, START + 2000)
        assert self.ledger.count_for(self.did) == 1

    def test_unknown_subject(self):
        with pytest.raises(UnknownSubject):
            self.ledger.record_event("did:attend:ghost", START)

    def test_events_ordered_by_time(self):
        for day in (3, 1, 2, 0):
            self.ledger.record_event(self.did, START + day * DAY_MS)

        occurred = [e.occurred_at for e in self.ledger.events_for(self.did)]
        assert occurred == sorted(occurred)

    def test_ratio_is_monotonic_and_bounded(self):
        previous = 0.0
        for day in range(12):
            self.ledger.record_event(self.did, START + day * DAY_MS)
            ratio = self.ledger.attendance_ratio(self.did, 10)
            assert previous <= ratio <= 1.0
            previous = ratio
        assert previous == 1.0

    def test_ratio_requires_positive_total(self):
        with pytest.raises(ValueError):
            self.ledger.attendance_ratio(self.did, 0)

    def test_concurrent_same_day_submissions(self):
        barrier = threading.Barrier(8)
        outcomes = []

        def submit(offset):
            barrier.wait()
            try:
                self.ledger.record_event(self.did, START + offset)
                outcomes.append("ok")
            except DuplicateForDay:
                outcomes.append("duplicate")

        threads = [threading.Thread(target=submit, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("duplicate") == 7
        assert self.ledger.count_for(self.did) == 1


class TestCredentialIssuer:
    """Test CredentialIssuer functionality"""

    def setup_method(self):
        self.registry, self.ledger, self.issuer = build_core()
        self.did = self.registry.create_identity().did

    def test_insufficient_attendance(self):
        attend(self.ledger, self.did, 7)

        with pytest.raises(InsufficientAttendance):
            self.issuer.issue(self.did)
        assert self.issuer.status_for(self.did) is SubjectState.INELIGIBLE

    def test_issue_credential(self):
        attend(self.ledger, self.did, 8)
        assert self.issuer.status_for(self.did) is SubjectState.ELIGIBLE

        credential = self.issuer.issue(self.did)

        assert credential.issuer_did == self.issuer.issuer_did
        assert credential.subject_did == self.did
        assert credential.claims.attendance_ratio == 0.8
        assert credential.claims.sessions_attended == 8
        assert credential.claims.sessions_required == 10
        assert credential.status is CredentialStatus.VALID
        assert self.issuer.status_for(self.did) is SubjectState.ISSUED

    def test_issue_twice(self):
        attend(self.ledger, self.did, 8)
        self.issuer.issue(self.did)

        with pytest.raises(AlreadyIssued):
            self.issuer.issue(self.did)

    def test_issue_unknown_subject(self):
        with pytest.raises(UnknownSubject):
            self.issuer.issue("did:attend:ghost")

    def test_concurrent_issue(self):
        attend(self.ledger, self.did, 9)
        barrier = threading.Barrier(6)
        issued, rejected = [], []

        def attempt():
            barrier.wait()
            try:
                issued.append(self.issuer.issue(self.did))
            except AlreadyIssued:
                rejected.append(True)

        threads = [threading.Thread(target=attempt) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(issued) == 1
        assert len(rejected) == 5
        valid = [c for c in self.issuer.list_credentials(self.did) if c.status is CredentialStatus.VALID]
        assert len(valid) == 1

    def test_revoke(self):
        attend(self.ledger, self.did, 8)
        credential = self.issuer.issue(self.did)

        entry = self.issuer.revoke(credential.credential_id, "Academic misconduct")

        assert entry.reason == "Academic misconduct"
        assert self.issuer.is_revoked(credential.credential_id)
        assert self.issuer.get_credential(credential.credential_id).status is CredentialStatus.REVOKED

    def test_revoke_errors(self):
        attend(self.ledger, self.did, 8)
        credential = self.issuer.issue(self.did)

        with pytest.raises(NotFound):
            self.issuer.revoke("urn:uuid:does-not-exist", "typo")

        self.issuer.revoke(credential.credential_id, "first")
        with pytest.raises(AlreadyRevoked):
            self.issuer.revoke(credential.credential_id, "second")
        assert len(self.issuer.revocation_entries()) == 1

    def test_reissue_after_revocation(self):
        attend(self.ledger, self.did, 8)
        first = self.issuer.issue(self.did)
        self.issuer.revoke(first.credential_id, "reissue")

        assert self.issuer.status_for(self.did) is SubjectState.REVOKED
        assert self.issuer.check_eligibility(self.did)["state"] == "Revoked"

        second = self.issuer.issue(self.did)

        assert self.issuer.status_for(self.did) is SubjectState.ISSUED

        assert second.credential_id != first.credential_id
        assert self.issuer.is_revoked(first.credential_id)
        assert not self.issuer.is_revoked(second.credential_id)

    def test_eligibility(self):
        attend(self.ledger, self.did, 5)

        report = self.issuer.check_eligibility(self.did)

        assert report["eligible"] is False
        assert report["sessionsNeeded"] == 3
        assert report["state"] == "Ineligible"

    def test_policy_validation(self):
        with pytest.raises(ValueError):
            IssuancePolicy(threshold=0)
        with pytest.raises(ValueError):
            IssuancePolicy(sessions_required=0)

    def test_credential_structure(self):
        attend(self.ledger, self.did, 8)
        vc = self.issuer.issue(self.did).to_dict()

        assert "https://www.w3.org/2018/credentials/v1" in vc["@context"]
        assert vc["type"] == ["VerifiableCredential", "AttendanceCredential"]
        assert vc["credentialSubject"]["id"] == self.did
        assert vc["proof"]["type"] == "Ed25519Signature2020"
        assert vc["proof"]["verificationMethod"] == f"{self.issuer.issuer_did}#key-1"

    def test_wire_round_trip_keeps_signature_input(self):
        attend(self.ledger, self.did, 10)
        credential = self.issuer.issue(self.did)

        parsed = Credential.from_json(credential.to_json())

        assert parsed.signing_bytes() == credential.signing_bytes()


class TestCredentialVerifier:
    """Test CredentialVerifier functionality"""

    def setup_method(self):
        self.registry, self.ledger, self.issuer = build_core()
        self.verifier = CredentialVerifier(
            resolver=self.registry,
            trusted_issuers=[self.issuer.issuer_did],
            revocation_source=self.issuer,
        )
        self.did = self.registry.create_identity().did
        attend(self.ledger, self.did, 8)
        self.credential = self.issuer.issue(self.did)

    def test_verify_valid_credential(self):
        result = self.verifier.verify(self.credential)

        assert result.valid is True
        assert result.reason is None
        assert all(result.checks.values())

    def test_verify_wire_form(self):
        assert self.verifier.verify(self.credential.to_dict()).valid
        assert self.verifier.verify_json(self.credential.to_json()).valid

    def test_malformed(self):
        data = self.credential.to_dict()
        del data["proof"]

        result = self.verifier.verify(data)

        assert result.valid is False
        assert result.reason is VerificationFailure.MALFORMED_CREDENTIAL

    def test_malformed_json(self):
        result = self.verifier.verify_json("{not json")
        assert result.reason is VerificationFailure.MALFORMED_CREDENTIAL

    def test_non_finite_ratio(self):
        data = self.credential.to_dict()
        data["credentialSubject"]["attendanceRatio"] = "__RATIO__"
        text = json.dumps(data)

        for literal in ("NaN", "Infinity", "-Infinity", "1e400"):
            result = self.verifier.verify_json(text.replace('"__RATIO__"', literal))

            assert result.valid is False
            assert result.reason is VerificationFailure.MALFORMED_CREDENTIAL

    def test_non_finite_ratio_on_credential_object(self):
        claims = replace(self.credential.claims, attendance_ratio=float("nan"))

        result = self.verifier.verify(replace(self.credential, claims=claims))

        assert result.reason is VerificationFailure.MALFORMED_CREDENTIAL
        assert result.checks["structure"] is False

    def test_tampered_claims(self):
        data = self.credential.to_dict()
        data["credentialSubject"]["attendanceRatio"] = 1.0

        result = self.verifier.verify(data)

        assert result.reason is VerificationFailure.INVALID_SIGNATURE

    def test_tampered_credential_id(self):
        tampered = replace(self.credential, credential_id="urn:uuid:fresh-id")

        assert self.verifier.verify(tampered).reason is VerificationFailure.INVALID_SIGNATURE

    def test_untrusted_issuer(self):
        _, _, other_issuer = build_core()
        verifier = CredentialVerifier(resolver=other_issuer.registry,
                                      trusted_issuers=[self.issuer.issuer_did])
        other_did = other_issuer.registry.create_identity().did
        attend(other_issuer.ledger, other_did, 8)

        result = verifier.verify(other_issuer.issue(other_did))

        assert result.reason is VerificationFailure.UNTRUSTED_ISSUER

    def test_revoked(self):
        assert self.verifier.verify(self.credential).valid

        self.issuer.revoke(self.credential.credential_id, "revoked for test")

        result = self.verifier.verify(self.credential)
        assert result.valid is False
        assert result.reason is VerificationFailure.REVOKED

    def test_unknown_subject(self):
        issuer_only = RegistrySnapshot({
            self.issuer.issuer_did: self.registry.resolve(self.issuer.issuer_did)
        })
        verifier = CredentialVerifier(resolver=issuer_only)

        result = verifier.verify(self.credential)

        assert result.reason is VerificationFailure.UNKNOWN_SUBJECT
        assert result.checks["signature"] is True

    def test_offline_with_snapshot_and_revocation_list(self):
        self.issuer.revoke(self.credential.credential_id, "offline")
        revocation_list = self.issuer.export_revocation_list()
        offline = CredentialVerifier(resolver=self.registry.snapshot())

        assert offline.verify(self.credential).valid  # no revocation data yet
        assert offline.load_revocation_list(json.loads(json.dumps(revocation_list.to_dict()))) == 1
        assert offline.verify(self.credential).reason is VerificationFailure.REVOKED

    def test_tampered_revocation_list(self):
        revocation_list = self.issuer.export_revocation_list()
        forged = revocation_list.to_dict()
        forged["entries"] = []
        forged["issuedAt"] += 1

        with pytest.raises(InvalidSignature):
            self.verifier.load_revocation_list(forged)

    def test_rotation_keeps_old_credentials_until_superseded(self):
        self.issuer.rotate_signing_key()
        newer_did = self.registry.create_identity().did
        attend(self.ledger, newer_did, 8)
        newer = self.issuer.issue(newer_did)

        assert newer.verification_method.endswith("#key-2")
        assert self.verifier.verify(self.credential).valid
        assert self.verifier.verify(newer).valid

        self.registry.supersede_key(self.issuer.issuer_did, 1)

        assert self.verifier.verify(self.credential).reason is VerificationFailure.INVALID_SIGNATURE
        assert self.verifier.verify(newer).valid


class TestSecp256k1Issuer:
    """Issuer signing with an Ethereum-compatible key"""

    def test_issue_and_verify(self):
        registry, ledger, issuer = build_core(issuer_key_type=SECP256K1)
        verifier = CredentialVerifier(resolver=registry, revocation_source=issuer)
        did = registry.create_identity().did
        attend(ledger, did, 9)

        credential = issuer.issue(did)

        assert credential.proof_type == "EcdsaSecp256k1Signature2019"
        assert verifier.verify(credential.to_dict()).valid


class TestCredentialParsing:
    def test_rejects_non_object(self):
        with pytest.raises(MalformedCredential):
            Credential.from_dict(["not", "a", "dict"])

    def test_rejects_boolean_counts(self):
        with pytest.raises(MalformedCredential):
            Credential.from_dict({
                "id": "urn:uuid:x",
                "type": ["VerifiableCredential"],
                "issuer": "did:attend:i",
                "credentialSubject": {
                    "id": "did:attend:s",
                    "attendanceRatio": 0.9,
                    "sessionsAttended": True,
                    "sessionsRequired": 10,
                    "issuedAt": START,
                },
                "proof": {"type": "Ed25519Signature2020", "verificationMethod": "did:attend:i#key-1",
                          "proofValue": "sig"},
            })
