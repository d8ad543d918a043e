from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class EmptyPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class DuePolicyPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Raw values; normalization happens in the policy service.
    checkout_due_hours: Optional[Any] = None
    escalation_level_1_hours: Optional[Any] = None
    escalation_level_2_hours: Optional[Any] = None
    escalation_level_3_hours: Optional[Any] = None


class BulkImportPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rows: List[Any] = []

    @field_validator("rows", mode="before")
    @classmethod
    def _rows_must_be_list(cls, value: Any) -> List[Any]:
        return value if isinstance(value, list) else []


class _Command(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("payload", mode="before", check_fields=False)
    @classmethod
    def _payload_must_be_object(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}


class GetNotificationsCommand(_Command):
    action: Literal["get_notifications"]
    payload: EmptyPayload = EmptyPayload()


class GetStatusTrackingCommand(_Command):
    action: Literal["get_status_tracking"]
    payload: EmptyPayload = EmptyPayload()


class SetDuePolicyCommand(_Command):
    action: Literal["set_due_policy"]
    payload: DuePolicyPayload = DuePolicyPayload()


class SendOverdueRemindersCommand(_Command):
    action: Literal["send_overdue_reminders"]
    payload: EmptyPayload = EmptyPayload()


class BulkImportGearCommand(_Command):
    action: Literal["bulk_import_gear"]
    payload: BulkImportPayload = BulkImportPayload()


AdminOpsCommand = Annotated[
    Union[
        GetNotificationsCommand,
        GetStatusTrackingCommand,
        SetDuePolicyCommand,
        SendOverdueRemindersCommand,
        BulkImportGearCommand,
    ],
    Field(discriminator="action"),
]

ADMIN_OPS_COMMAND = TypeAdapter(AdminOpsCommand)

ACTION_NAMES = frozenset(
    {
        "get_notifications",
        "get_status_tracking",
        "set_due_policy",
        "send_overdue_reminders",
        "bulk_import_gear",
    }
)
