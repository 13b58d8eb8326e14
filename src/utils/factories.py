import random
from datetime import datetime, timezone

from src.models.order import Transaction


def _numeric_id() -> int:
    return random.randint(10**12, 10**13 - 1)


class OrderFactory:
    """Factory for Shopify order payloads with sensible defaults."""

    @staticmethod
    def create(flag: str | None = None, flag_location: str = "note_attributes", **overrides) -> dict:
        now = datetime.now(timezone.utc)
        order = {
            "id": _numeric_id(),
            "name": f"#{random.randint(1000, 9999)}",
            "financial_status": "authorized",
            "created_at": now.isoformat(),
            "currency": "USD",
            "total_price": "100.00",
            "note_attributes": [],
            "tags": "",
        }
        if flag is not None:
            _attach_flag(order, flag, flag_location)
        order.update(overrides)
        return order


def _attach_flag(order: dict, flag: str, location: str) -> None:
    if location == "note_attributes":
        order["note_attributes"] = [{"name": "payment_flag", "value": flag}]
    elif location == "metafields":
        order["metafields"] = [{"key": "payment_flag", "value": flag}]
    elif location == "tags":
        order["tags"] = f"wholesale, {flag}"
    elif location == "custom_attributes":
        order["custom_attributes"] = [{"key": "payment_flag", "value": flag}]
    else:
        raise ValueError(f"Unknown flag location '{location}'")


class TransactionFactory:
    """Factory for Shopify transaction payloads."""

    @staticmethod
    def create(kind: str = "authorization", status: str = "success", **overrides) -> dict:
        defaults = {
            "id": _numeric_id(),
            "kind": kind,
            "status": status,
            "parent_id": None,
            "amount": "100.00",
            "currency": "USD",
            "gateway": "shopify_payments",
        }
        defaults.update(overrides)
        return defaults

    @staticmethod
    def authorization(**overrides) -> dict:
        return TransactionFactory.create("authorization", "success", **overrides)

    @staticmethod
    def build(**overrides) -> Transaction:
        return Transaction.from_dict(TransactionFactory.create(**overrides))
