import logging
from datetime import datetime, timedelta

from src.capture_scheduler.scheduler import DeferredCaptureScheduler
from src.errors import NoAuthorizedTransaction, PermissionDenied
from src.models.order import PaymentIntent, ProcessingResult
from src.platform_client.client import ShopifyClient

logger = logging.getLogger(__name__)

FLAG_KEY = "payment_flag"


def has_flag(order: dict | None, flag: str) -> bool:
    """Check every place a payment flag can be attached to a Shopify order."""
    if not order:
        return False

    for attr in order.get("note_attributes") or []:
        if attr.get("name") == FLAG_KEY and attr.get("value") == flag:
            return True

    for meta in order.get("metafields") or []:
        if meta.get("key") == FLAG_KEY and meta.get("value") == flag:
            return True

    tags = order.get("tags") or ""
    if isinstance(tags, str):
        tags = tags.split(",")
    if flag in (t.strip() for t in tags):
        return True

    for attr in order.get("custom_attributes") or []:
        if attr.get("key") == FLAG_KEY and attr.get("value") == flag:
            return True

    return False


def classify(order: dict | None) -> PaymentIntent:
    # buy_now wins when an order carries both flags
    if has_flag(order, PaymentIntent.CAPTURE_NOW.value):
        return PaymentIntent.CAPTURE_NOW
    if has_flag(order, PaymentIntent.CAPTURE_LATER.value):
        return PaymentIntent.CAPTURE_LATER
    return PaymentIntent.NONE


class OrderProcessor:
    """Routes order webhooks to an immediate capture, a scheduled one, or a cancellation."""

    def __init__(
        self,
        client: ShopifyClient,
        scheduler: DeferredCaptureScheduler,
        deferral: timedelta = timedelta(days=7),
    ):
        self.client = client
        self.scheduler = scheduler
        self.deferral = deferral

    def process_order_created(self, payload: dict) -> ProcessingResult:
        order_id = str(payload["id"])
        logger.info("Order created: %s", order_id)
        try:
            order = self.client.get_order(order_id)
        except PermissionDenied as e:
            logger.warning(
                "Cannot process order %s automatically: missing read_orders scope", order_id
            )
            return ProcessingResult(
                order_id=order_id,
                intent=PaymentIntent.NONE,
                action="skipped",
                error="missing_read_scope",
                message=str(e),
            )

        intent = classify(order)
        if intent is PaymentIntent.CAPTURE_NOW:
            return self._capture_now(order_id)
        if intent is PaymentIntent.CAPTURE_LATER:
            return self._schedule_later(order_id)

        logger.info("No payment flag found for order %s", order_id)
        return ProcessingResult(order_id=order_id, intent=intent, action="skipped")

    def process_order_updated(self, payload: dict) -> ProcessingResult:
        order_id = str(payload["id"])
        logger.info("Order updated: %s", order_id)

        intent = classify(payload)
        if intent is PaymentIntent.CAPTURE_NOW:
            # The deferred job goes even if the immediate capture then fails
            if self.scheduler.cancel(order_id):
                logger.info("Order %s switched to buy_now; deferred capture cancelled", order_id)
            return self._capture_now(order_id)
        if intent is PaymentIntent.CAPTURE_LATER:
            return self._schedule_later(order_id)

        cancelled = self.scheduler.cancel(order_id)
        return ProcessingResult(
            order_id=order_id,
            intent=intent,
            action="cancelled" if cancelled else "skipped",
        )

    def capture_now(self, order_id: str) -> dict:
        """Capture the order's authorized transaction right away.

        Raises NoAuthorizedTransaction when there is nothing to capture.
        """
        transaction = self.client.get_authorized_transaction(order_id)
        if transaction is None:
            raise NoAuthorizedTransaction(order_id)
        return self.client.capture(order_id, transaction.id)

    def schedule_payment(self, order_id: str, due_at: datetime) -> str:
        """Look up the authorized transaction and schedule its capture at ``due_at``."""
        transaction = self.client.get_authorized_transaction(order_id)
        if transaction is None:
            raise NoAuthorizedTransaction(order_id)
        return self.scheduler.schedule(order_id, transaction.id, due_at)

    def cancel_scheduled_payment(self, order_id: str) -> bool:
        return self.scheduler.cancel(order_id)

    def list_scheduled_jobs(self) -> list[dict]:
        return [summary.to_dict() for summary in self.scheduler.list()]

    def _capture_now(self, order_id: str) -> ProcessingResult:
        logger.info("Processing buy_now order: %s", order_id)
        try:
            self.capture_now(order_id)
        except NoAuthorizedTransaction as e:
            logger.info("%s", e)
            return ProcessingResult(
                order_id=order_id,
                intent=PaymentIntent.CAPTURE_NOW,
                action="skipped",
                error="no_authorized_transaction",
                message=str(e),
            )
        return ProcessingResult(
            order_id=order_id, intent=PaymentIntent.CAPTURE_NOW, action="captured"
        )

    def _schedule_later(self, order_id: str) -> ProcessingResult:
        due_at = self.scheduler.clock() + self.deferral
        logger.info("Scheduling pay_later order %s for %s", order_id, due_at.isoformat())
        try:
            job_id = self.schedule_payment(order_id, due_at)
        except NoAuthorizedTransaction as e:
            logger.info("%s", e)
            return ProcessingResult(
                order_id=order_id,
                intent=PaymentIntent.CAPTURE_LATER,
                action="skipped",
                error="no_authorized_transaction",
                message=str(e),
            )
        return ProcessingResult(
            order_id=order_id,
            intent=PaymentIntent.CAPTURE_LATER,
            action="scheduled",
            job_id=job_id,
        )
