"""
Scheduled shoot emails.

Four jobs poll bookings on a fixed interval and email the client once per
booking per window:

- 5 days before the shoot
- 115-125 minutes before the start time
- the day after the shoot
- N days after the shoot (default 7)

A sentinel row in the lead activity ledger marks each send, so repeated ticks
inside the same window never email twice. A failed send leaves no sentinel
and is retried on the next tick.
"""

from __future__ import annotations

import json
import logging
import math
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .config import settings
from .models import AssignedCrew, CrewMember, SalesLead, StreamProjectBooking

logger = logging.getLogger(__name__)

SHOOT_REMINDER_5_DAYS = "shoot_reminder_5_days"
SHOOT_REMINDER_2_HOURS = "shoot_reminder_2_hours"
SHOOT_COMPLETION_NEXT_DAY = "shoot_completion_next_day"
SHOOT_FINAL_NUDGE = "shoot_final_nudge_7_days"

JOB_NAMES = (
    SHOOT_REMINDER_5_DAYS,
    SHOOT_REMINDER_2_HOURS,
    SHOOT_COMPLETION_NEXT_DAY,
    SHOOT_FINAL_NUDGE,
)

FIRST_NAME_FALLBACK = "there"
CREATIVE_PARTNER_FALLBACK = "your Creative Partner"
CONFIRMED_CREW_STATUSES = frozenset({"selected", "assigned", "confirmed"})
LOCATION_KEYS = ("address", "full_address", "formatted_address", "place_name", "name")

_EMAIL_SEPARATORS = re.compile(r"[._-]+")


@dataclass(frozen=True)
class LeadSnapshot:
    lead_id: int
    client_name: str | None = None
    guest_email: str | None = None


@dataclass(frozen=True)
class CrewAssignmentSnapshot:
    first_name: str | None
    last_name: str | None
    crew_accept: bool = False
    status: str | None = None
    updated_at: datetime | None = None
    assigned_date: datetime | None = None


@dataclass(frozen=True)
class BookingSnapshot:
    booking_id: int
    event_date: date
    start_time: time | None = None
    end_time: time | None = None
    event_location: Any = None
    content_type: str | None = None
    edits_needed: bool = False
    guest_email: str | None = None
    user_email: str | None = None
    user_name: str | None = None
    lead: LeadSnapshot | None = None
    crew: tuple[CrewAssignmentSnapshot, ...] = ()


@dataclass
class JobReport:
    job: str
    candidates: int = 0
    sent: int = 0
    already_sent: int = 0
    outside_window: int = 0
    no_recipient: int = 0
    failed: int = 0
    errors: int = 0


class BookingSource(Protocol):
    def bookings_on(
        self, event_date: date, *, require_start_time: bool = False
    ) -> list[BookingSnapshot]: ...


class SentinelLedger(Protocol):
    def has_sentinel(
        self, *, lead_id: int | None, booking_id: int, marker: str, target_key: str
    ) -> bool: ...

    def mark_sentinel(
        self,
        *,
        lead_id: int | None,
        booking_id: int,
        marker: str,
        target_key: str,
        key_field: str = "target_date",
        extra: dict[str, Any] | None = None,
    ) -> bool: ...


class ShootEmailSender(Protocol):
    def send_shoot_reminder_5_days_email(self, payload: dict[str, Any]) -> Any: ...

    def send_shoot_reminder_2_hours_email(self, payload: dict[str, Any]) -> Any: ...

    def send_shoot_completion_email(self, payload: dict[str, Any]) -> Any: ...

    def send_final_nudge_7_days_email(self, payload: dict[str, Any]) -> Any: ...


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _first_token(value: str | None) -> str | None:
    if not value:
        return None
    parts = value.split()
    return parts[0] if parts else None


def resolve_recipient_email(booking: BookingSnapshot) -> str | None:
    """Account email, else booking guest email, else the lead's guest email."""
    candidates = (
        booking.user_email,
        booking.guest_email,
        booking.lead.guest_email if booking.lead else None,
    )
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def derive_first_name(
    user_name: str | None, lead_client_name: str | None, email: str | None
) -> str:
    for name in (user_name, lead_client_name):
        token = _first_token(name)
        if token:
            return token
    if email:
        local_part = email.split("@", 1)[0]
        token = _first_token(_EMAIL_SEPARATORS.sub(" ", local_part))
        if token:
            return token[:1].upper() + token[1:]
    return FIRST_NAME_FALLBACK


def _assignment_stamp(assignment: CrewAssignmentSnapshot) -> float:
    stamp = assignment.updated_at or assignment.assigned_date
    return stamp.timestamp() if stamp else float("-inf")


def resolve_creative_partner_name(crew: tuple[CrewAssignmentSnapshot, ...] | list[CrewAssignmentSnapshot]) -> str:
    ordered = sorted(crew, key=_assignment_stamp, reverse=True)
    chosen = next((c for c in ordered if c.crew_accept), None)
    if chosen is None:
        chosen = next(
            (
                c
                for c in ordered
                if (c.status or "").strip().lower() in CONFIRMED_CREW_STATUSES
            ),
            None,
        )
    if chosen is None and ordered:
        chosen = ordered[0]
    if chosen is None:
        return CREATIVE_PARTNER_FALLBACK
    name = " ".join(
        part.strip() for part in (chosen.first_name, chosen.last_name) if part and part.strip()
    )
    return name or CREATIVE_PARTNER_FALLBACK


def minutes_until(start_at: datetime, now: datetime) -> int:
    """Whole minutes from ``now`` to ``start_at``, halves rounded up."""
    return math.floor((start_at - now).total_seconds() / 60 + 0.5)


def format_date(value: date) -> str:
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def format_time(value: time | None) -> str:
    if value is None:
        return "TBD"
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


def format_location(raw: Any) -> str:
    if raw is None:
        return "TBD"
    location = raw
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return "TBD"
        if not text.startswith("{"):
            return text
        try:
            location = json.loads(text)
        except ValueError:
            return text
    if isinstance(location, dict):
        for key in LOCATION_KEYS:
            value = location.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return "TBD"
    return str(location)


def wants_editing(booking: BookingSnapshot) -> bool:
    return bool(booking.edits_needed) or "edit" in (booking.content_type or "").lower()


# ---------------------------------------------------------------------------
# Booking source
# ---------------------------------------------------------------------------


class SqlBookingSource:
    """Reads eligible bookings: active, not cancelled, not draft, paid."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def bookings_on(
        self, event_date: date, *, require_start_time: bool = False
    ) -> list[BookingSnapshot]:
        with self._session_factory() as db:
            stmt = (
                select(StreamProjectBooking)
                .options(selectinload(StreamProjectBooking.user))
                .where(
                    StreamProjectBooking.event_date == event_date,
                    StreamProjectBooking.is_active.is_(True),
                    StreamProjectBooking.is_cancelled.is_(False),
                    StreamProjectBooking.is_draft.is_(False),
                    StreamProjectBooking.payment_id.is_not(None),
                    StreamProjectBooking.payment_id != "",
                )
                .order_by(StreamProjectBooking.id)
            )
            if require_start_time:
                stmt = stmt.where(StreamProjectBooking.start_time.is_not(None))
            bookings = list(db.scalars(stmt))
            if not bookings:
                return []
            booking_ids = [b.id for b in bookings]

            leads: dict[int, LeadSnapshot] = {}
            for lead in db.scalars(
                select(SalesLead)
                .where(SalesLead.booking_id.in_(booking_ids))
                .order_by(SalesLead.lead_id.desc())
            ):
                if lead.booking_id is not None and lead.booking_id not in leads:
                    leads[lead.booking_id] = LeadSnapshot(
                        lead_id=lead.lead_id,
                        client_name=lead.client_name,
                        guest_email=lead.guest_email,
                    )

            crew: dict[int, list[CrewAssignmentSnapshot]] = {}
            rows = db.execute(
                select(AssignedCrew, CrewMember)
                .join(CrewMember, CrewMember.crew_member_id == AssignedCrew.crew_member_id)
                .where(
                    AssignedCrew.booking_id.in_(booking_ids),
                    AssignedCrew.is_active.is_(True),
                )
            )
            for assignment, member in rows:
                crew.setdefault(assignment.booking_id, []).append(
                    CrewAssignmentSnapshot(
                        first_name=member.first_name,
                        last_name=member.last_name,
                        crew_accept=bool(assignment.crew_accept),
                        status=assignment.status,
                        updated_at=assignment.updated_at,
                        assigned_date=assignment.assigned_date,
                    )
                )

            return [
                BookingSnapshot(
                    booking_id=b.id,
                    event_date=b.event_date,
                    start_time=b.start_time,
                    end_time=b.end_time,
                    event_location=b.event_location,
                    content_type=b.content_type,
                    edits_needed=bool(b.edits_needed),
                    guest_email=b.guest_email,
                    user_email=b.user.email if b.user else None,
                    user_name=b.user.name if b.user else None,
                    lead=leads.get(b.id),
                    crew=tuple(crew.get(b.id, [])),
                )
                for b in bookings
                if b.event_date is not None
            ]


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class JobGuard:
    """One non-blocking lock per job; a held lock means the job is running."""

    def __init__(self, names: tuple[str, ...]):
        self._locks = {name: threading.Lock() for name in names}

    def try_acquire(self, name: str) -> bool:
        return self._locks[name].acquire(blocking=False)

    def release(self, name: str) -> None:
        self._locks[name].release()

    def is_active(self, name: str) -> bool:
        return self._locks[name].locked()


class ScheduledEmailScheduler:
    def __init__(
        self,
        bookings: BookingSource,
        ledger: SentinelLedger,
        email_sender: ShootEmailSender,
        *,
        clock: Callable[[], datetime] = datetime.now,
        interval_minutes: int | None = None,
        window_min: int | None = None,
        window_max: int | None = None,
        final_nudge_days: int | None = None,
        enabled: bool | None = None,
    ):
        self.bookings = bookings
        self.ledger = ledger
        self.email_sender = email_sender
        self._clock = clock
        self.interval_minutes = interval_minutes or settings.SHOOT_REMINDER_JOB_INTERVAL_MINUTES
        self.window_min = (
            window_min if window_min is not None else settings.SHOOT_REMINDER_2H_WINDOW_MIN
        )
        self.window_max = (
            window_max if window_max is not None else settings.SHOOT_REMINDER_2H_WINDOW_MAX
        )
        self.final_nudge_days = final_nudge_days or settings.SHOOT_FINAL_NUDGE_DAYS_AFTER
        self.enabled = settings.ENABLE_SCHEDULED_EMAIL_JOBS if enabled is None else enabled

        self.guard = JobGuard(JOB_NAMES)
        self._jobs: dict[str, Callable[[], JobReport]] = {
            SHOOT_REMINDER_5_DAYS: self._run_five_day_reminders,
            SHOOT_REMINDER_2_HOURS: self._run_two_hour_reminders,
            SHOOT_COMPLETION_NEXT_DAY: self._run_completion_emails,
            SHOOT_FINAL_NUDGE: self._run_final_nudges,
        }
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

    def is_active(self, job: str) -> bool:
        return self.guard.is_active(job)

    def run_job(self, job: str) -> JobReport | None:
        """Run one job now. Returns None when it is already running or failed."""
        if job not in self._jobs:
            raise ValueError(f"Unknown scheduled email job: {job}")
        if not self.guard.try_acquire(job):
            logger.info("Job %s is still running, skipping this tick", job)
            return None
        try:
            report = self._jobs[job]()
        except Exception:
            logger.exception("Scheduled email job %s failed; will retry next tick", job)
            return None
        finally:
            self.guard.release(job)
        logger.info(
            "Job %s: %d candidates, %d sent, %d already sent, %d failed, %d errors",
            job,
            report.candidates,
            report.sent,
            report.already_sent,
            report.failed,
            report.errors,
        )
        return report

    def run_all(self) -> dict[str, JobReport | None]:
        return {job: self.run_job(job) for job in JOB_NAMES}

    # -- jobs ------------------------------------------------------------

    def _run_five_day_reminders(self) -> JobReport:
        report = JobReport(SHOOT_REMINDER_5_DAYS)
        target = self._clock().date() + timedelta(days=5)
        for booking in self.bookings.bookings_on(target):
            self._deliver(
                report,
                booking,
                target.isoformat(),
                "target_date",
                self._five_day_payload,
                self.email_sender.send_shoot_reminder_5_days_email,
            )
        return report

    def _run_two_hour_reminders(self) -> JobReport:
        report = JobReport(SHOOT_REMINDER_2_HOURS)
        now = self._clock()
        for booking in self.bookings.bookings_on(now.date(), require_start_time=True):
            if booking.start_time is None:
                continue
            start_at = datetime.combine(booking.event_date, booking.start_time)
            if now.tzinfo is not None:
                start_at = start_at.replace(tzinfo=now.tzinfo)
            minutes = minutes_until(start_at, now)
            if not self.window_min <= minutes <= self.window_max:
                report.outside_window += 1
                continue
            self._deliver(
                report,
                booking,
                start_at.replace(tzinfo=None).isoformat(),
                "target_start_at",
                self._two_hour_payload,
                self.email_sender.send_shoot_reminder_2_hours_email,
            )
        return report

    def _run_completion_emails(self) -> JobReport:
        report = JobReport(SHOOT_COMPLETION_NEXT_DAY)
        target = self._clock().date() - timedelta(days=1)
        for booking in self.bookings.bookings_on(target):
            self._deliver(
                report,
                booking,
                target.isoformat(),
                "target_date",
                self._completion_payload,
                self.email_sender.send_shoot_completion_email,
            )
        return report

    def _run_final_nudges(self) -> JobReport:
        report = JobReport(SHOOT_FINAL_NUDGE)
        target = self._clock().date() - timedelta(days=self.final_nudge_days)
        for booking in self.bookings.bookings_on(target):
            self._deliver(
                report,
                booking,
                target.isoformat(),
                "target_date",
                self._final_nudge_payload,
                self.email_sender.send_final_nudge_7_days_email,
            )
        return report

    def _deliver(
        self,
        report: JobReport,
        booking: BookingSnapshot,
        target_key: str,
        key_field: str,
        build_payload: Callable[[BookingSnapshot, str], dict[str, Any]],
        send: Callable[[dict[str, Any]], Any],
    ) -> None:
        report.candidates += 1
        lead_id = booking.lead.lead_id if booking.lead else None
        try:
            if self.ledger.has_sentinel(
                lead_id=lead_id,
                booking_id=booking.booking_id,
                marker=report.job,
                target_key=target_key,
            ):
                report.already_sent += 1
                return

            recipient = resolve_recipient_email(booking)
            if not recipient:
                logger.warning(
                    "No recipient email for booking %s, skipping %s",
                    booking.booking_id,
                    report.job,
                )
                report.no_recipient += 1
                return

            result = send(build_payload(booking, recipient))
            if getattr(result, "success", False) is not True:
                logger.warning(
                    "%s email for booking %s not sent: %s",
                    report.job,
                    booking.booking_id,
                    getattr(result, "error", None) or "no success reported",
                )
                report.failed += 1
                return

            recorded = self.ledger.mark_sentinel(
                lead_id=lead_id,
                booking_id=booking.booking_id,
                marker=report.job,
                target_key=target_key,
                key_field=key_field,
            )
            if not recorded:
                logger.warning(
                    "%s sentinel for booking %s (%s) was already held by another run",
                    report.job,
                    booking.booking_id,
                    target_key,
                )
                report.already_sent += 1
                return
            report.sent += 1
        except Exception:
            report.errors += 1
            logger.exception(
                "Error processing %s for booking %s", report.job, booking.booking_id
            )

    # -- payloads --------------------------------------------------------

    @staticmethod
    def _first_name(booking: BookingSnapshot, recipient: str) -> str:
        return derive_first_name(
            booking.user_name, booking.lead.client_name if booking.lead else None, recipient
        )

    def _five_day_payload(self, booking: BookingSnapshot, recipient: str) -> dict[str, Any]:
        return {
            "to_email": recipient,
            "booking_id": booking.booking_id,
            "first_name": self._first_name(booking, recipient),
            "shoot_date": format_date(booking.event_date),
            "start_time": format_time(booking.start_time),
            "end_time": format_time(booking.end_time),
            "shoot_location_address": format_location(booking.event_location),
        }

    def _two_hour_payload(self, booking: BookingSnapshot, recipient: str) -> dict[str, Any]:
        return {
            "to_email": recipient,
            "booking_id": booking.booking_id,
            "first_name": self._first_name(booking, recipient),
            "start_time": format_time(booking.start_time),
            "end_time": format_time(booking.end_time),
            "shoot_location_address": format_location(booking.event_location),
            "cp_name": resolve_creative_partner_name(booking.crew),
        }

    def _completion_payload(self, booking: BookingSnapshot, recipient: str) -> dict[str, Any]:
        has_editing = wants_editing(booking)
        return {
            "to_email": recipient,
            "booking_id": booking.booking_id,
            "first_name": self._first_name(booking, recipient),
            "cp_name": resolve_creative_partner_name(booking.crew),
            "has_editing": has_editing,
            "raw_only": not has_editing,
        }

    def _final_nudge_payload(self, booking: BookingSnapshot, recipient: str) -> dict[str, Any]:
        return {
            "to_email": recipient,
            "booking_id": booking.booking_id,
            "first_name": self._first_name(booking, recipient),
            "cp_name": resolve_creative_partner_name(booking.crew),
        }

    # -- timer -----------------------------------------------------------

    def tick(self) -> list[Future[JobReport | None]]:
        """Hand every job to the worker pool without waiting for it."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=len(JOB_NAMES), thread_name_prefix="shoot-email"
            )
        return [self._executor.submit(self.run_job, job) for job in JOB_NAMES]

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.interval_minutes * 60)

    def start(self) -> bool:
        if not self.enabled:
            logger.info("Scheduled shoot emails are disabled")
            return False
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="shoot-email-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(
            "Scheduled shoot emails started, polling every %d minutes", self.interval_minutes
        )
        return True

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=30 if wait else 0)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


def build_scheduler(**overrides: Any) -> ScheduledEmailScheduler:
    """Scheduler wired to the database and the SMTP email service."""
    from .audit_log import LeadActivityLedger
    from .db import SessionLocal
    from .email_service import email_service

    return ScheduledEmailScheduler(
        SqlBookingSource(SessionLocal),
        LeadActivityLedger(SessionLocal),
        email_service,
        **overrides,
    )
