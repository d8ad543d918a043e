from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.gear_models import TenantPolicy
from services.errors import InvalidPolicy, UpstreamFailure
from services.query_service import dialect_insert, run_rows, run_write

POLICY_LOGGER = logging.getLogger("itemtraxx.policy")

DEFAULT_DUE_HOURS = 72
DEFAULT_ESC_1 = 120
DEFAULT_ESC_2 = 168
DEFAULT_ESC_3 = 240
MAX_DUE_HOURS = 24 * 30

ESCALATION_COLUMNS = (
    "escalation_level_1_hours",
    "escalation_level_2_hours",
    "escalation_level_3_hours",
)


@dataclass(frozen=True)
class DuePolicy:
    due_hours: int
    escalation_level_1_hours: int
    escalation_level_2_hours: int
    escalation_level_3_hours: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    def tier_for(self, hours_since_checkout: float) -> int:
        if hours_since_checkout >= self.escalation_level_3_hours:
            return 3
        if hours_since_checkout >= self.escalation_level_2_hours:
            return 2
        if hours_since_checkout >= self.escalation_level_1_hours:
            return 1
        return 0


def parse_positive_int(value: Any, fallback: int) -> int:
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return fallback
    if not isinstance(value, (int, float, Decimal, str)):
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError, OverflowError):
        return fallback
    if not math.isfinite(parsed) or parsed <= 0:
        return fallback
    result = int(math.floor(parsed))
    return result if result >= 1 else fallback


def normalize_escalation_policy(due_hours: Any, level1: Any, level2: Any, level3: Any) -> DuePolicy:
    normalized_due = parse_positive_int(due_hours, DEFAULT_DUE_HOURS)
    normalized_level1 = max(parse_positive_int(level1, DEFAULT_ESC_1), normalized_due)
    normalized_level2 = max(parse_positive_int(level2, DEFAULT_ESC_2), normalized_level1 + 1)
    normalized_level3 = max(parse_positive_int(level3, DEFAULT_ESC_3), normalized_level2 + 1)
    return DuePolicy(
        due_hours=normalized_due,
        escalation_level_1_hours=normalized_level1,
        escalation_level_2_hours=normalized_level2,
        escalation_level_3_hours=normalized_level3,
    )


def default_policy() -> DuePolicy:
    return normalize_escalation_policy(DEFAULT_DUE_HOURS, DEFAULT_ESC_1, DEFAULT_ESC_2, DEFAULT_ESC_3)


def load_policy(db: Session, tenant_id: str) -> DuePolicy:
    """Load the tenant policy, tolerating deployments without escalation columns."""
    outcome = run_rows(
        db,
        select(
            TenantPolicy.checkout_due_hours,
            TenantPolicy.escalation_level_1_hours,
            TenantPolicy.escalation_level_2_hours,
            TenantPolicy.escalation_level_3_hours,
        ).where(TenantPolicy.tenant_id == tenant_id),
        label="tenant_policies",
    )
    if any(outcome.is_missing_column(column) for column in ESCALATION_COLUMNS):
        fallback = run_rows(
            db,
            select(TenantPolicy.checkout_due_hours).where(TenantPolicy.tenant_id == tenant_id),
            label="tenant_policies_due_only",
        )
        if not fallback.ok:
            raise UpstreamFailure("Unable to load due policy.")
        row = fallback.rows[0] if fallback.rows else {}
        return normalize_escalation_policy(
            row.get("checkout_due_hours"),
            DEFAULT_ESC_1,
            DEFAULT_ESC_2,
            DEFAULT_ESC_3,
        )
    if outcome.is_missing_relation("tenant_policies"):
        return default_policy()
    if not outcome.ok:
        raise UpstreamFailure("Unable to load due policy.")

    row = outcome.rows[0] if outcome.rows else {}
    return normalize_escalation_policy(
        row.get("checkout_due_hours"),
        row.get("escalation_level_1_hours"),
        row.get("escalation_level_2_hours"),
        row.get("escalation_level_3_hours"),
    )


def save_policy(db: Session, tenant_id: str, user_id: str, raw: dict[str, Any]) -> dict[str, int]:
    policy = normalize_escalation_policy(
        raw.get("checkout_due_hours"),
        raw.get("escalation_level_1_hours"),
        raw.get("escalation_level_2_hours"),
        raw.get("escalation_level_3_hours"),
    )
    if policy.due_hours < 1 or policy.due_hours > MAX_DUE_HOURS:
        raise InvalidPolicy()

    values = {
        "tenant_id": tenant_id,
        "checkout_due_hours": policy.due_hours,
        "escalation_level_1_hours": policy.escalation_level_1_hours,
        "escalation_level_2_hours": policy.escalation_level_2_hours,
        "escalation_level_3_hours": policy.escalation_level_3_hours,
        "updated_by": user_id,
        "updated_at": datetime.now(timezone.utc),
    }
    insert = dialect_insert(db)
    stmt = insert(TenantPolicy).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[TenantPolicy.tenant_id],
        set_={key: value for key, value in values.items() if key != "tenant_id"},
    ).returning(
        TenantPolicy.checkout_due_hours,
        TenantPolicy.escalation_level_1_hours,
        TenantPolicy.escalation_level_2_hours,
        TenantPolicy.escalation_level_3_hours,
    )
    outcome = run_write(db, stmt, label="tenant_policies_upsert", returning=True)
    if not outcome.ok or not outcome.rows:
        raise UpstreamFailure("Unable to save due time limit.")
    POLICY_LOGGER.info("Due policy saved tenant_id=%s user_id=%s due_hours=%s", tenant_id, user_id, policy.due_hours)
    return outcome.rows[0]
