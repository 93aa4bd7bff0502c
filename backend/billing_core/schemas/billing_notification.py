"""
Pydantic schemas for inbound billing-status notifications.

A notification is the processor's view of one subscription at one moment.
It is delivered at-least-once, possibly out of order and possibly
duplicated; the reducer handles those cases, this module only rejects
payloads that are structurally invalid.
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from billing_core.errors import ReconciliationError
from billing_core.models.account import PAYLOAD_FINGERPRINT_PREFIX, SubscriptionPlan, SubscriptionStatus
from billing_core.platform.clock import ensure_utc


class ProcessorStatus(str, Enum):
    """Subscription statuses in the processor's vocabulary."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"                  # Payment requires customer action
    INCOMPLETE_EXPIRED = "incomplete_expired"


# Processor status -> local subscription status
PROCESSOR_STATUS_MAP: Dict[ProcessorStatus, SubscriptionStatus] = {
    ProcessorStatus.TRIALING: SubscriptionStatus.TRIAL,
    ProcessorStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    ProcessorStatus.PAST_DUE: SubscriptionStatus.PAST_DUE,
    ProcessorStatus.CANCELED: SubscriptionStatus.CANCELED,
    ProcessorStatus.UNPAID: SubscriptionStatus.UNPAID,
    ProcessorStatus.INCOMPLETE: SubscriptionStatus.UNPAID,
    ProcessorStatus.INCOMPLETE_EXPIRED: SubscriptionStatus.UNPAID,
}

# Statuses that mean the customer must complete a payment step
ACTION_REQUIRED_STATUSES = frozenset({ProcessorStatus.INCOMPLETE})


class FailurePayload(BaseModel):
    """Details of the payment failure that caused a past_due/unpaid status."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    reason: Optional[str] = Field(None, max_length=500)
    amount_due: Optional[int] = Field(None, ge=0, description="Minor currency units")
    invoice_id: Optional[str] = Field(None, max_length=255)


class BillingNotification(BaseModel):
    """Billing-status notification for one subscription."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    subscription_id: str = Field(..., min_length=1, max_length=255)
    price_id: str = Field(..., min_length=1, max_length=255)
    status: ProcessorStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    plan: Optional[SubscriptionPlan] = None
    interval: Optional[str] = Field(None, max_length=32)
    event_id: Optional[str] = Field(None, max_length=255)
    failure: Optional[FailurePayload] = None

    @field_validator("current_period_start", "current_period_end", "trial_end", mode="before")
    @classmethod
    def parse_epoch_seconds(cls, value: Any) -> Any:
        # The processor reports instants as unix seconds
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        return value

    @field_validator("current_period_start", "current_period_end", "trial_end")
    @classmethod
    def normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def validate_period(self):
        if self.current_period_end < self.current_period_start:
            raise ValueError(
                f"current_period_end ({self.current_period_end.isoformat()}) must not be "
                f"before current_period_start ({self.current_period_start.isoformat()})"
            )
        return self

    @property
    def local_status(self) -> SubscriptionStatus:
        return PROCESSOR_STATUS_MAP[self.status]

    @property
    def requires_action(self) -> bool:
        return self.status in ACTION_REQUIRED_STATUSES

    def resolved_plan(self) -> SubscriptionPlan:
        """Explicit plan if present, else derived from the billing interval."""
        if self.plan is not None:
            return self.plan
        if (self.interval or "").lower() == "year":
            return SubscriptionPlan.ANNUAL
        return SubscriptionPlan.MONTHLY

    def fingerprint(self) -> str:
        """
        Identity used for redelivery detection.

        The processor event id when present, otherwise a hash of the
        canonical payload.
        """
        if self.event_id:
            return f"evt:{self.event_id}"
        payload_str = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return PAYLOAD_FINGERPRINT_PREFIX + hashlib.sha256(payload_str.encode()).hexdigest()


def parse_notification(payload: Dict[str, Any]) -> BillingNotification:
    """
    Validate a raw notification payload.

    Raises:
        ReconciliationError: Missing required fields, unknown status, or an
            inverted billing period
    """
    if not isinstance(payload, dict):
        raise ReconciliationError(
            f"Notification payload must be an object, got {type(payload).__name__}"
        )
    try:
        return BillingNotification.model_validate(payload)
    except ValidationError as e:
        details = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise ReconciliationError("Malformed billing notification", details=details) from e
