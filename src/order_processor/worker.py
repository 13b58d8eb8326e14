import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass

from src.models.order import ProcessingResult
from src.order_processor.processor import OrderProcessor

logger = logging.getLogger(__name__)

ORDER_CREATED = "orders/create"
ORDER_UPDATED = "orders/updated"

DEFAULT_HISTORY_SIZE = 1000


@dataclass
class OrderWebhookTask:
    topic: str
    payload: dict


class OrderWebhookWorker:
    """Drains acknowledged order webhooks on a background thread."""

    def __init__(
        self,
        processor: OrderProcessor,
        poll_timeout: float = 1.0,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ):
        self.processor = processor
        self.poll_timeout = poll_timeout
        self._queue: queue.Queue[OrderWebhookTask] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._results: deque[ProcessingResult] = deque(maxlen=history_size)
        self._errors: deque[dict] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def submit(self, topic: str, payload: dict) -> None:
        if topic not in (ORDER_CREATED, ORDER_UPDATED):
            raise ValueError(f"Unknown webhook topic '{topic}'")
        self._queue.put(OrderWebhookTask(topic=topic, payload=payload))

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="order-webhook-worker", daemon=True)
        self._thread.start()
        logger.info("Order webhook worker started")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Order webhook worker stopped")

    def join(self) -> None:
        """Block until every submitted webhook has been processed."""
        self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()

    def get_results(self) -> list[ProcessingResult]:
        with self._lock:
            return list(self._results)

    def get_errors(self) -> list[dict]:
        with self._lock:
            return list(self._errors)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                task = self._queue.get(timeout=self.poll_timeout)
            except queue.Empty:
                continue
            try:
                self.process(task)
            finally:
                self._queue.task_done()

    def process(self, task: OrderWebhookTask) -> ProcessingResult | None:
        try:
            if task.topic == ORDER_CREATED:
                result = self.processor.process_order_created(task.payload)
            else:
                result = self.processor.process_order_updated(task.payload)
        except Exception as e:
            logger.error(
                "Error handling %s webhook for order %s: %s",
                task.topic, task.payload.get("id"), e, exc_info=True,
            )
            with self._lock:
                self._errors.append({
                    "topic": task.topic,
                    "order_id": task.payload.get("id"),
                    "error": str(e),
                    "type": type(e).__name__,
                })
            return None
        with self._lock:
            self._results.append(result)
        return result
