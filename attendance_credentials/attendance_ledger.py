"""
Attendance Ledger
=================

Append-only log of attendance events, one per subject and day bucket.
All reads are derived views over the stored events.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .canonical import content_hash
from .errors import DuplicateForDay, NotFound, UnknownSubject
from .identity_registry import IdentityRegistry
from .storage import Store

logger = logging.getLogger(__name__)

DAY_MS = 86_400_000


def day_bucket_for(timestamp: int) -> int:
    """Integer day index of an epoch-millisecond timestamp"""
    return timestamp // DAY_MS


def event_id_for(subject_did: str, day_bucket: int, session_id: str) -> str:
    return content_hash({"subjectDid": subject_did, "dayBucket": day_bucket, "sessionId": session_id})


@dataclass(frozen=True)
class AttendanceEvent:
    subject_did: str
    day_bucket: int
    session_id: str
    occurred_at: int
    event_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subjectDid": self.subject_did,
            "dayBucket": self.day_bucket,
            "sessionId": self.session_id,
            "occurredAt": self.occurred_at,
            "date": datetime.fromtimestamp(self.occurred_at / 1000, tz=timezone.utc).isoformat(),
            "eventId": self.event_id,
        }


class AttendanceLedger:
    """
    Records attendance and computes attendance ratios

    ``record_event`` is the only write. The ``(subject, day bucket)`` slot
    is claimed with a single put-if-absent, so two racing submissions for
    the same day leave exactly one event behind.
    """

    def __init__(self, registry: IdentityRegistry, store: Store, course_id: str = "course-1"):
        self.registry = registry
        self.store = store
        self.course_id = course_id

    @staticmethod
    def _namespace(subject_did: str) -> str:
        return f"events:{subject_did}"

    def record_event(
        self,
        subject_did: str,
        timestamp: int,
        session_id: Optional[str] = None,
    ) -> AttendanceEvent:
        """
        Append an attendance event

        Args:
            subject_did: DID of the attending subject
            timestamp: Epoch milliseconds of the attendance
            session_id: Session label, defaults to ``<course_id>:<day bucket>``

        Raises:
            UnknownSubject: DID does not resolve
            DuplicateForDay: an event already exists for that day bucket
        """
        if not self.registry.exists(subject_did):
            logger.warning("Rejected attendance for unknown subject %s", subject_did)
            raise UnknownSubject(f"Unknown subject: {subject_did}", did=subject_did)

        bucket = day_bucket_for(timestamp)
        session_id = session_id or f"{self.course_id}:{bucket}"
        event = AttendanceEvent(
            subject_did=subject_did,
            day_bucket=bucket,
            session_id=session_id,
            occurred_at=timestamp,
            event_id=event_id_for(subject_did, bucket, session_id),
        )

        if not self.store.put_if_absent(self._namespace(subject_did), str(bucket), event):
            logger.warning("Duplicate attendance for %s on day %d", subject_did, bucket)
            raise DuplicateForDay(
                f"Attendance already recorded for day {bucket}",
                did=subject_did,
                day_bucket=bucket,
            )

        logger.info("Recorded attendance %s for %s", event.event_id[:12], subject_did)
        return event

    # ==================== DERIVED VIEWS ====================

    def events_for(self, subject_did: str) -> List[AttendanceEvent]:
        """Events for one subject in non-decreasing ``occurred_at`` order"""
        events = [event for _, event in self.store.scan(self._namespace(subject_did))]
        return sorted(events, key=lambda e: (e.occurred_at, e.day_bucket))

    def count_for(self, subject_did: str) -> int:
        return sum(1 for _ in self.store.scan(self._namespace(subject_did)))

    def attendance_ratio(self, subject_did: str, total_required_sessions: int) -> float:
        """
        Attended sessions over required sessions, clamped to [0, 1]

        Raises:
            UnknownSubject: DID does not resolve
        """
        if total_required_sessions <= 0:
            raise ValueError("total_required_sessions must be positive")
        if not self.registry.exists(subject_did):
            raise UnknownSubject(f"Unknown subject: {subject_did}", did=subject_did)
        return min(1.0, self.count_for(subject_did) / total_required_sessions)

    def attendance_summary(self, subject_did: str, total_required_sessions: int) -> Dict[str, Any]:
        """Events plus headline numbers for one subject"""
        ratio = self.attendance_ratio(subject_did, total_required_sessions)
        events = self.events_for(subject_did)
        try:
            subject = self.registry.get_subject(subject_did).to_dict()
        except NotFound:
            subject = None
        return {
            "did": subject_did,
            "subject": subject,
            "records": [event.to_dict() for event in events],
            "sessionsAttended": len(events),
            "sessionsRequired": total_required_sessions,
            "attendanceRatio": ratio,
            "lastAttendance": events[-1].to_dict()["date"] if events else None,
        }

    def total_events(self) -> int:
        return sum(self.count_for(subject.did) for subject in self.registry.list_subjects())
