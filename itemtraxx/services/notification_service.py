from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from models.gear_models import UNFLAGGED_STATUSES, AppRuntimeConfig, Gear, GearStatusHistory
from services.errors import UpstreamFailure
from services.policy_service import DuePolicy, default_policy, load_policy
from services.query_service import gather_reads, isoformat, run_rows, run_scalar

NOTIFY_LOGGER = logging.getLogger("itemtraxx.notifications")

RECENT_EVENT_LIMIT = 8
MAINTENANCE_KEY = "maintenance_mode"
DEFAULT_MAINTENANCE_MESSAGE = "Maintenance in progress."


def resolve_maintenance(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        return {"enabled": False, "message": ""}
    message = value.get("message")
    return {
        "enabled": value.get("enabled") is True,
        "message": message.strip() if isinstance(message, str) and message.strip() else DEFAULT_MAINTENANCE_MESSAGE,
    }


def load_maintenance(db: Session) -> dict[str, Any]:
    outcome = run_rows(
        db,
        select(AppRuntimeConfig.value).where(AppRuntimeConfig.key == MAINTENANCE_KEY),
        label="app_runtime_config",
    )
    row = outcome.rows[0] if outcome.ok and outcome.rows else {}
    return resolve_maintenance(row.get("value"))


def due_cutoff(policy: DuePolicy, now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - timedelta(hours=policy.due_hours)


def count_overdue(db: Session, tenant_id: str, cutoff: datetime) -> int:
    outcome = run_scalar(
        db,
        select(func.count(Gear.id))
        .where(Gear.tenant_id == tenant_id)
        .where(Gear.status == "checked_out")
        .where(Gear.deleted_at.is_(None))
        .where(Gear.checked_out_at < cutoff),
        label="gear_overdue_count",
    )
    return int(outcome.value or 0) if outcome.ok else 0


def count_flagged(db: Session, tenant_id: str) -> int:
    outcome = run_scalar(
        db,
        select(func.count(Gear.id))
        .where(Gear.tenant_id == tenant_id)
        .where(Gear.deleted_at.is_(None))
        .where(Gear.status.not_in(UNFLAGGED_STATUSES)),
        label="gear_flagged_count",
    )
    return int(outcome.value or 0) if outcome.ok else 0


def load_recent_status_events(db: Session, tenant_id: str, limit: int = RECENT_EVENT_LIMIT) -> list[dict[str, Any]]:
    outcome = run_rows(
        db,
        select(
            GearStatusHistory.id,
            GearStatusHistory.status,
            GearStatusHistory.changed_at,
            Gear.name.label("gear_name"),
            Gear.barcode.label("gear_barcode"),
            Gear.id.label("gear_ref"),
        )
        .outerjoin(Gear, Gear.id == GearStatusHistory.gear_id)
        .where(GearStatusHistory.tenant_id == tenant_id)
        .order_by(GearStatusHistory.changed_at.desc())
        .limit(limit),
        label="gear_status_history_recent",
    )
    if not outcome.ok:
        return []
    return [
        {
            "id": row["id"],
            "status": row["status"],
            "changed_at": isoformat(row["changed_at"]),
            "gear": {"name": row["gear_name"], "barcode": row["gear_barcode"]} if row["gear_ref"] else None,
        }
        for row in outcome.rows
    ]


def _policy_or_default(db: Session, tenant_id: str) -> DuePolicy:
    try:
        return load_policy(db, tenant_id)
    except UpstreamFailure:
        NOTIFY_LOGGER.warning("Notifications using default policy tenant_id=%s", tenant_id)
        return default_policy()


def build_notifications(session_factory: sessionmaker, tenant_id: str, now: datetime | None = None) -> dict[str, Any]:
    reads = gather_reads(
        session_factory,
        {
            "policy": lambda db: _policy_or_default(db, tenant_id),
            "flagged_count": lambda db: count_flagged(db, tenant_id),
            "recent_status_events": lambda db: load_recent_status_events(db, tenant_id),
            "maintenance": load_maintenance,
        },
    )
    policy: DuePolicy = reads["policy"]
    with session_factory() as db:
        overdue_count = count_overdue(db, tenant_id, due_cutoff(policy, now))

    return {
        "overdue_count": overdue_count,
        "flagged_count": reads["flagged_count"],
        **policy.as_dict(),
        "maintenance": reads["maintenance"],
        "recent_status_events": reads["recent_status_events"],
    }
