from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from models.gear_models import UNFLAGGED_STATUSES, Gear, GearStatusHistory
from services.errors import UpstreamFailure
from services.policy_service import load_policy
from services.query_service import QueryOutcome, gather_reads, isoformat, run_rows

TRACKING_LOGGER = logging.getLogger("itemtraxx.status_tracking")

FLAGGED_ITEM_LIMIT = 400
HISTORY_LIMIT = 600
TRACKING_ERROR = "Unable to load status tracking."


def _flagged_query(tenant_id: str, order_column):
    columns = [
        Gear.id,
        Gear.name,
        Gear.barcode,
        Gear.serial_number,
        Gear.status,
        Gear.notes,
        Gear.created_at,
    ]
    if order_column is Gear.updated_at:
        columns.append(Gear.updated_at)
    return (
        select(*columns)
        .where(Gear.tenant_id == tenant_id)
        .where(Gear.deleted_at.is_(None))
        .where(Gear.status.not_in(UNFLAGGED_STATUSES))
        .order_by(order_column.desc())
        .limit(FLAGGED_ITEM_LIMIT)
    )


def _serialize_flagged(row: dict[str, Any]) -> dict[str, Any]:
    updated_at = row.get("updated_at") or row.get("created_at")
    return {
        "id": row["id"],
        "name": row["name"],
        "barcode": row["barcode"],
        "serial_number": row["serial_number"],
        "status": row["status"],
        "notes": row["notes"],
        "updated_at": isoformat(updated_at),
    }


def load_flagged_items(db: Session, tenant_id: str) -> list[dict[str, Any]]:
    outcome = run_rows(db, _flagged_query(tenant_id, Gear.updated_at), label="gear_flagged")
    if outcome.is_missing_column("updated_at"):
        TRACKING_LOGGER.info("Flagged gear falling back to created_at tenant_id=%s", tenant_id)
        outcome = run_rows(db, _flagged_query(tenant_id, Gear.created_at), label="gear_flagged_created_at")
    if not outcome.ok:
        TRACKING_LOGGER.error(
            "Status tracking flagged query failed tenant_id=%s code=%s",
            tenant_id,
            outcome.error_code,
        )
        raise UpstreamFailure(TRACKING_ERROR)
    return [_serialize_flagged(row) for row in outcome.rows]


def _load_history_rows(db: Session, tenant_id: str) -> QueryOutcome:
    return run_rows(
        db,
        select(
            GearStatusHistory.id,
            GearStatusHistory.gear_id,
            GearStatusHistory.status,
            GearStatusHistory.note,
            GearStatusHistory.changed_at,
            GearStatusHistory.changed_by,
        )
        .where(GearStatusHistory.tenant_id == tenant_id)
        .order_by(GearStatusHistory.changed_at.desc())
        .limit(HISTORY_LIMIT),
        label="gear_status_history",
    )


def load_history(db: Session, tenant_id: str) -> list[dict[str, Any]]:
    outcome = _load_history_rows(db, tenant_id)
    if outcome.is_missing_relation("gear_status_history"):
        return []
    if not outcome.ok:
        TRACKING_LOGGER.error(
            "Status tracking history query failed tenant_id=%s code=%s",
            tenant_id,
            outcome.error_code,
        )
        raise UpstreamFailure(TRACKING_ERROR)

    gear_ids = list(dict.fromkeys(row["gear_id"] for row in outcome.rows if row["gear_id"]))
    gear_map: dict[str, dict[str, Any]] = {}
    if gear_ids:
        lookup = run_rows(
            db,
            select(Gear.id, Gear.name, Gear.barcode)
            .where(Gear.tenant_id == tenant_id)
            .where(Gear.id.in_(gear_ids)),
            label="gear_identity",
        )
        for row in lookup.rows:
            gear_map[row["id"]] = {"name": row["name"], "barcode": row["barcode"]}

    return [
        {
            "id": row["id"],
            "gear_id": row["gear_id"],
            "status": row["status"],
            "note": row["note"],
            "changed_at": isoformat(row["changed_at"]),
            "changed_by": row["changed_by"],
            "gear": gear_map.get(row["gear_id"]),
        }
        for row in outcome.rows
    ]


def build_status_tracking(session_factory: sessionmaker, tenant_id: str) -> dict[str, Any]:
    reads = gather_reads(
        session_factory,
        {
            "flagged_items": lambda db: load_flagged_items(db, tenant_id),
            "policy": lambda db: load_policy(db, tenant_id),
            "history": lambda db: load_history(db, tenant_id),
        },
    )
    return {
        **reads["policy"].as_dict(),
        "flagged_items": reads["flagged_items"],
        "history": reads["history"],
    }
