from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, insert, select
from sqlalchemy.orm import Session

from models.gear_models import GEAR_STATUSES, TRACKED_STATUSES, Gear, GearStatusHistory
from services.errors import InvalidBatchSize, UpstreamFailure
from services.query_service import run_rows, run_write

IMPORT_LOGGER = logging.getLogger("itemtraxx.import")

MAX_IMPORT_ROWS = 1000
MAX_NAME_LENGTH = 120
MAX_BARCODE_LENGTH = 64
MAX_SERIAL_LENGTH = 64
MAX_NOTES_LENGTH = 500

REASON_MISSING = "Missing name or barcode"
REASON_LENGTH = "Field length exceeded"
REASON_STATUS = "Invalid status"
REASON_DUPLICATE = "Duplicate barcode in import"
REASON_EXISTS = "Barcode already exists"


@dataclass
class ImportRow:
    name: str
    barcode: str
    serial_number: str | None
    status: str
    notes: str | None


@dataclass
class ImportPlan:
    accepted: list[ImportRow] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)

    def skip(self, barcode: str, reason: str) -> None:
        self.skipped.append({"barcode": barcode, "reason": reason})


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def validate_rows(raw_rows: list[Any]) -> ImportPlan:
    """Validate each row independently and drop in-batch duplicate barcodes."""
    if not raw_rows or len(raw_rows) > MAX_IMPORT_ROWS:
        raise InvalidBatchSize()

    plan = ImportPlan()
    seen_barcodes: set[str] = set()
    for raw in raw_rows:
        row = raw if isinstance(raw, dict) else {}
        name = _clean(row.get("name"))
        barcode = _clean(row.get("barcode"))
        serial = _clean(row.get("serial_number"))
        status = _clean(row.get("status")) or "available"
        notes = _clean(row.get("notes"))

        if not name or not barcode:
            plan.skip(barcode or "(blank)", REASON_MISSING)
            continue
        if (
            len(name) > MAX_NAME_LENGTH
            or len(barcode) > MAX_BARCODE_LENGTH
            or len(serial) > MAX_SERIAL_LENGTH
            or len(notes) > MAX_NOTES_LENGTH
        ):
            plan.skip(barcode, REASON_LENGTH)
            continue
        if status not in GEAR_STATUSES:
            plan.skip(barcode, REASON_STATUS)
            continue
        if barcode.lower() in seen_barcodes:
            plan.skip(barcode, REASON_DUPLICATE)
            continue

        seen_barcodes.add(barcode.lower())
        plan.accepted.append(
            ImportRow(
                name=name,
                barcode=barcode,
                serial_number=serial or None,
                status=status,
                notes=notes or None,
            )
        )
    return plan


def existing_barcodes(db: Session, tenant_id: str, barcodes: list[str]) -> set[str]:
    lowered = sorted({barcode.lower() for barcode in barcodes})
    if not lowered:
        return set()
    outcome = run_rows(
        db,
        select(Gear.barcode).where(Gear.tenant_id == tenant_id).where(func.lower(Gear.barcode).in_(lowered)),
        label="gear_existing_barcodes",
    )
    if not outcome.ok:
        raise UpstreamFailure("Unable to import item rows.")
    return {str(row["barcode"]).lower() for row in outcome.rows}


def _record_history(db: Session, tenant_id: str, user_id: str, inserted: list[dict[str, Any]]) -> None:
    history = [
        {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "gear_id": item["id"],
            "status": item["status"],
            "note": item.get("notes"),
            "changed_by": user_id,
        }
        for item in inserted
        if item["status"] in TRACKED_STATUSES
    ]
    if not history:
        return
    outcome = run_write(db, insert(GearStatusHistory).values(history), label="gear_status_history_import")
    if not outcome.ok:
        IMPORT_LOGGER.warning(
            "Status history not recorded for import tenant_id=%s rows=%s status=%s",
            tenant_id,
            len(history),
            outcome.status.value,
        )


def import_gear(db: Session, tenant_id: str, user_id: str, raw_rows: list[Any]) -> dict[str, Any]:
    plan = validate_rows(raw_rows)
    skipped = plan.skipped

    to_insert: list[ImportRow] = []
    if plan.accepted:
        existing = existing_barcodes(db, tenant_id, [row.barcode for row in plan.accepted])
        for row in plan.accepted:
            if row.barcode.lower() in existing:
                skipped.append({"barcode": row.barcode, "reason": REASON_EXISTS})
            else:
                to_insert.append(row)

    if not to_insert:
        return {"inserted": 0, "skipped": len(skipped), "inserted_items": [], "skipped_rows": skipped}

    payload = [
        {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "name": row.name,
            "barcode": row.barcode,
            "serial_number": row.serial_number,
            "status": row.status,
            "notes": row.notes,
        }
        for row in to_insert
    ]
    stmt = (
        insert(Gear)
        .values(payload)
        .returning(Gear.id, Gear.tenant_id, Gear.name, Gear.barcode, Gear.serial_number, Gear.status, Gear.notes)
    )
    outcome = run_write(db, stmt, label="gear_import", returning=True)
    if not outcome.ok:
        IMPORT_LOGGER.error("Gear import failed tenant_id=%s code=%s", tenant_id, outcome.error_code)
        raise UpstreamFailure("Unable to import item rows.")

    inserted = outcome.rows
    _record_history(db, tenant_id, user_id, inserted)
    IMPORT_LOGGER.info(
        "Gear import tenant_id=%s user_id=%s inserted=%s skipped=%s",
        tenant_id,
        user_id,
        len(inserted),
        len(skipped),
    )
    return {
        "inserted": len(inserted),
        "skipped": len(skipped),
        "inserted_items": inserted,
        "skipped_rows": skipped,
    }
