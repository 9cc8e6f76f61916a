# backend/attendance_engine/services/fraud_policy.py
"""Fraud and timing policy for attendance marks.

Everything here is pure: given a session's policy, the mark's evidence and
the marks already made, ``evaluate_mark`` returns the same decision every
time. The state machine does all reading and writing.
"""
import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from attendance_engine.models.attendance import AttendanceStatus, FraudFlagKind
from attendance_engine.models.attendance_session import SessionMethod, StaleQrPolicy
from attendance_engine.utils.errors import (
    DUPLICATE_ATTEMPT, FACE_VERIFICATION_REQUIRED, INVALID_METHOD,
    SESSION_WINDOW_CLOSED, STALE_QR
)

EARTH_RADIUS_METERS = 6371000


@dataclass(frozen=True)
class SessionPolicy:
    """Per-session configuration, fixed when the session starts."""

    method: str
    late_after_minutes: int
    auto_absent_minutes: Optional[int] = None
    face_required: bool = False
    stale_qr_policy: str = StaleQrPolicy.REJECT.value
    velocity_window_seconds: int = 60
    proximity_meters: float = 2.0

    @classmethod
    def from_session(cls, attendance_session, config) -> 'SessionPolicy':
        return cls(
            method=attendance_session.method,
            late_after_minutes=attendance_session.late_after_minutes,
            auto_absent_minutes=attendance_session.auto_absent_minutes,
            face_required=attendance_session.face_required,
            stale_qr_policy=attendance_session.stale_qr_policy,
            velocity_window_seconds=config['FRAUD_VELOCITY_WINDOW_SECONDS'],
            proximity_meters=config['FRAUD_PROXIMITY_METERS'],
        )

    @property
    def requires_face(self) -> bool:
        return self.face_required or self.method == SessionMethod.FACE.value


@dataclass(frozen=True)
class MarkEvidence:
    """What the student submitted with the mark."""

    method: str
    qr_code: Optional[str] = None
    face_verified: bool = False
    device_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class PriorMark:
    """Another student's mark in the same session."""

    student_id: int
    marked_at: datetime
    device_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def from_record(cls, record) -> 'PriorMark':
        return cls(
            student_id=record.student_id,
            marked_at=record.marked_at,
            device_id=record.device_id,
            latitude=record.latitude,
            longitude=record.longitude,
        )


@dataclass(frozen=True)
class MarkDecision:
    """Outcome of evaluating one mark.

    A decision with a ``rejection`` code fails the call. When ``persist`` is
    also set, a flagged record is still written first.
    """

    status: Optional[str] = None
    fraud_flags: Tuple[str, ...] = ()
    rejection: Optional[str] = None
    persist: bool = True
    minutes_after_start: Optional[float] = None
    context: Dict = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.rejection is None


@dataclass(frozen=True)
class SignalContext:
    policy: SessionPolicy
    evidence: MarkEvidence
    now: datetime
    student_id: int
    other_marks: Sequence[PriorMark]


FraudSignal = Callable[[SignalContext], Optional[FraudFlagKind]]

_fraud_signals: Dict[str, FraudSignal] = {}


def register_fraud_signal(name: str, signal: FraudSignal = None):
    """Add a fraud signal to the registry.

    Signals see the mark's context and return a flag kind to raise or None.
    A firing signal flags the record; it never blocks the mark. Usable as a
    decorator.
    """
    def decorator(fn: FraudSignal) -> FraudSignal:
        _fraud_signals[name] = fn
        return fn

    if signal is not None:
        return decorator(signal)
    return decorator


def unregister_fraud_signal(name: str) -> None:
    _fraud_signals.pop(name, None)


def registered_fraud_signals() -> List[str]:
    return sorted(_fraud_signals)


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two GPS points in meters."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


@register_fraud_signal('impossible_velocity')
def impossible_velocity(ctx: SignalContext) -> Optional[FraudFlagKind]:
    """Another student marked from the same device or spot moments ago."""
    window = timedelta(seconds=ctx.policy.velocity_window_seconds)

    for mark in ctx.other_marks:
        if mark.student_id == ctx.student_id:
            continue
        if abs(ctx.now - mark.marked_at) > window:
            continue

        if ctx.evidence.device_id and mark.device_id == ctx.evidence.device_id:
            return FraudFlagKind.IMPOSSIBLE_VELOCITY

        if ctx.evidence.has_location and mark.latitude is not None and mark.longitude is not None:
            distance = distance_meters(
                ctx.evidence.latitude, ctx.evidence.longitude,
                mark.latitude, mark.longitude
            )
            if distance <= ctx.policy.proximity_meters:
                return FraudFlagKind.IMPOSSIBLE_VELOCITY

    return None


def minutes_elapsed(started_at: datetime, now: datetime) -> float:
    return max((now - started_at).total_seconds() / 60, 0.0)


def timing_status(policy: SessionPolicy, minutes: float) -> str:
    """present up to and including late_after, late after that."""
    if minutes <= policy.late_after_minutes:
        return AttendanceStatus.PRESENT.value
    return AttendanceStatus.LATE.value


def _qr_matches(submitted: Optional[str], current: Optional[str]) -> bool:
    if not submitted or not current:
        return False
    return secrets.compare_digest(submitted.encode(), current.encode())


def evaluate_mark(policy: SessionPolicy,
                  started_at: datetime,
                  current_qr_code: Optional[str],
                  now: datetime,
                  student_id: int,
                  own_record,
                  other_marks: Sequence[PriorMark],
                  evidence: MarkEvidence) -> MarkDecision:
    """Decide the outcome of a student's mark on an active session.

    Checks run in a fixed order and the first failure wins: duplicate,
    timing window, method, QR code, face verification. Fraud signals run
    last and only flag.
    """
    elapsed = minutes_elapsed(started_at, now)
    minutes = round(elapsed, 2)

    if own_record is not None:
        return MarkDecision(rejection=DUPLICATE_ATTEMPT, persist=False,
                            minutes_after_start=minutes)

    if policy.auto_absent_minutes is not None and elapsed > policy.auto_absent_minutes:
        return MarkDecision(
            rejection=SESSION_WINDOW_CLOSED,
            persist=False,
            minutes_after_start=minutes,
            context={
                'minutes_after_start': minutes,
                'auto_absent_minutes': policy.auto_absent_minutes,
            },
        )

    if policy.method == SessionMethod.MANUAL.value or evidence.method != policy.method:
        return MarkDecision(rejection=INVALID_METHOD, persist=False,
                            minutes_after_start=minutes)

    if policy.method == SessionMethod.QR.value and not _qr_matches(evidence.qr_code, current_qr_code):
        if policy.stale_qr_policy == StaleQrPolicy.FLAG.value:
            return MarkDecision(
                status=AttendanceStatus.FLAGGED.value,
                fraud_flags=(FraudFlagKind.STALE_QR.value,),
                rejection=STALE_QR,
                persist=True,
                minutes_after_start=minutes,
            )
        return MarkDecision(rejection=STALE_QR, persist=False,
                            minutes_after_start=minutes)

    if policy.requires_face and not evidence.face_verified:
        return MarkDecision(rejection=FACE_VERIFICATION_REQUIRED, persist=False,
                            minutes_after_start=minutes)

    ctx = SignalContext(policy=policy, evidence=evidence, now=now,
                        student_id=student_id, other_marks=tuple(other_marks))
    flags = []
    for name in registered_fraud_signals():
        kind = _fraud_signals[name](ctx)
        if kind is not None and kind.value not in flags:
            flags.append(kind.value)

    if flags:
        return MarkDecision(status=AttendanceStatus.FLAGGED.value,
                            fraud_flags=tuple(flags),
                            minutes_after_start=minutes)

    return MarkDecision(status=timing_status(policy, elapsed), minutes_after_start=minutes)
