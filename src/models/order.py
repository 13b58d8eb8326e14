from dataclasses import dataclass
from enum import Enum


class PaymentIntent(Enum):
    CAPTURE_NOW = "buy_now"
    CAPTURE_LATER = "pay_later"
    NONE = "none"


@dataclass
class Transaction:
    id: str
    kind: str  # "authorization", "capture", "sale", ...
    status: str  # "success", "pending", "failure", "error"
    parent_id: str | None = None
    amount: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        parent_id = data.get("parent_id")
        return cls(
            id=str(data["id"]),
            kind=data.get("kind", ""),
            status=data.get("status", ""),
            parent_id=str(parent_id) if parent_id is not None else None,
            amount=data.get("amount"),
        )

    @property
    def is_capturable_authorization(self) -> bool:
        return self.kind == "authorization" and self.status == "success" and not self.parent_id


@dataclass
class ProcessingResult:
    order_id: str
    intent: PaymentIntent
    action: str  # "captured", "scheduled", "cancelled", "skipped"
    job_id: str | None = None
    error: str | None = None
    message: str | None = None
