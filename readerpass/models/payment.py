from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from readerpass.models.plan import Region


class IntentKind(str, Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class IntentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentIntent(BaseModel):
    """A payment the caller was sent to a gateway to complete."""
    model_config = ConfigDict(frozen=True)

    reference: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    plan_name: str
    provider: Region
    provider_reference: Optional[str] = None
    amount: int
    currency: str
    kind: IntentKind
    status: IntentStatus = IntentStatus.PENDING
    created_at: datetime

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None
