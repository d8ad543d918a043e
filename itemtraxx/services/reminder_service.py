from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.gear_models import Gear, Student
from services.email_service import EmailDeliveryError
from services.errors import ProviderNotConfigured, UpstreamFailure
from services.notification_service import due_cutoff
from services.policy_service import DuePolicy, load_policy
from services.query_service import run_rows

REMINDER_LOGGER = logging.getLogger("itemtraxx.reminders")

OVERDUE_ROW_LIMIT = 500
SUBJECT_LABELS = {
    0: "Overdue notice",
    1: "Reminder",
    2: "Second notice",
    3: "Final notice",
}


@dataclass
class OverdueItem:
    name: str
    barcode: str
    checked_out_at: datetime | None
    tier: int


@dataclass
class BorrowerReminder:
    email: str
    student_name: str
    student_id: str
    max_tier: int = 0
    items: list[OverdueItem] = field(default_factory=list)

    def add(self, item: OverdueItem) -> None:
        self.items.append(item)
        self.max_tier = max(self.max_tier, item.tier)


def subject_label(tier: int) -> str:
    return SUBJECT_LABELS[min(max(tier, 0), 3)]


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def hours_since_checkout(checked_out_at: Any, policy: DuePolicy, now: datetime) -> float:
    parsed = parse_timestamp(checked_out_at)
    if parsed is None:
        return float(policy.due_hours)
    return max(0.0, (now - parsed).total_seconds() / 3600)


def load_overdue_rows(db: Session, tenant_id: str, policy: DuePolicy, now: datetime) -> list[dict[str, Any]]:
    outcome = run_rows(
        db,
        select(
            Gear.id,
            Gear.name,
            Gear.barcode,
            Gear.checked_out_at,
            Student.first_name,
            Student.last_name,
            Student.student_id,
            Student.email,
        )
        .outerjoin(Student, Student.id == Gear.checked_out_by)
        .where(Gear.tenant_id == tenant_id)
        .where(Gear.status == "checked_out")
        .where(Gear.deleted_at.is_(None))
        .where(Gear.checked_out_at < due_cutoff(policy, now))
        .order_by(Gear.checked_out_at.asc(), Gear.id.asc())
        .limit(OVERDUE_ROW_LIMIT),
        label="gear_overdue",
    )
    if not outcome.ok:
        REMINDER_LOGGER.error("Overdue query failed tenant_id=%s code=%s", tenant_id, outcome.error_code)
        raise UpstreamFailure("Unable to load overdue items.")
    return outcome.rows


def group_by_borrower(rows: list[dict[str, Any]], policy: DuePolicy, now: datetime) -> dict[str, BorrowerReminder]:
    grouped: dict[str, BorrowerReminder] = {}
    for row in rows:
        email = str(row.get("email") or "").strip().lower()
        if not email:
            continue
        tier = policy.tier_for(hours_since_checkout(row.get("checked_out_at"), policy, now))
        bucket = grouped.get(email)
        if bucket is None:
            full_name = f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()
            bucket = BorrowerReminder(
                email=email,
                student_name=full_name,
                student_id=str(row.get("student_id") or ""),
                max_tier=tier,
            )
            grouped[email] = bucket
        bucket.add(
            OverdueItem(
                name=str(row.get("name") or ""),
                barcode=str(row.get("barcode") or ""),
                checked_out_at=parse_timestamp(row.get("checked_out_at")),
                tier=tier,
            )
        )
    return grouped


def render_reminder(reminder: BorrowerReminder, policy: DuePolicy) -> tuple[str, str]:
    label = subject_label(reminder.max_tier)
    item_rows = []
    for item in reminder.items:
        date_label = item.checked_out_at.strftime("%Y-%m-%d %H:%M UTC") if item.checked_out_at else "unknown time"
        item_rows.append(
            f"<li>{html.escape(item.name)} ({html.escape(item.barcode)}) - checked out {date_label}</li>"
        )
    body = (
        f"<p>Hello {html.escape(reminder.student_name or 'Student')},</p>"
        f"<p>{label}: the following item(s) are overdue.</p>"
        f"<ul>{''.join(item_rows)}</ul>"
        f"<p>Due limit: {policy.due_hours} hours.</p>"
        "<p>Please return these items as soon as possible.</p>"
    )
    return f"{label} - ItemTraxx overdue item", body


def send_overdue_reminders(
    db: Session,
    tenant_id: str,
    api_key: str,
    sender: str,
    send_email: Callable[..., None],
    now: datetime | None = None,
) -> dict[str, Any]:
    if not api_key:
        raise ProviderNotConfigured()

    now = now or datetime.now(timezone.utc)
    policy = load_policy(db, tenant_id)
    grouped = group_by_borrower(load_overdue_rows(db, tenant_id, policy, now), policy, now)

    sent = 0
    escalation_stats = {"level_1": 0, "level_2": 0, "level_3": 0}
    for email, reminder in grouped.items():
        subject, body = render_reminder(reminder, policy)
        try:
            send_email(api_key, sender, email, subject, body)
        except EmailDeliveryError as exc:
            REMINDER_LOGGER.error("Overdue reminder send failed email=%s message=%s", email, exc)
            continue
        sent += 1
        if reminder.max_tier >= 1:
            escalation_stats[f"level_{min(reminder.max_tier, 3)}"] += 1

    REMINDER_LOGGER.info(
        "Overdue reminders tenant_id=%s sent=%s recipients=%s",
        tenant_id,
        sent,
        len(grouped),
    )
    return {
        "sent": sent,
        "recipients": len(grouped),
        **policy.as_dict(),
        "escalation_recipients": escalation_stats,
    }
