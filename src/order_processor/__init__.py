from .processor import OrderProcessor, classify, has_flag
from .worker import OrderWebhookWorker, ORDER_CREATED, ORDER_UPDATED

__all__ = [
    "OrderProcessor", "classify", "has_flag",
    "OrderWebhookWorker", "ORDER_CREATED", "ORDER_UPDATED",
]
