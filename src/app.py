"""Process entry point: wires the service together and runs until signalled."""

import logging
import signal
import threading
from datetime import timedelta

from dotenv import load_dotenv

from src.capture_scheduler.logger import CaptureLogger
from src.capture_scheduler.retry import RetryPolicy
from src.capture_scheduler.scheduler import DeferredCaptureScheduler
from src.config import Settings, setup_logging
from src.errors import PlatformError
from src.observability.alerting import AlertManager
from src.observability.metrics import MetricsCollector
from src.order_processor.processor import OrderProcessor
from src.order_processor.worker import OrderWebhookWorker
from src.platform_client.client import ShopifyClient
from src.webhook_receiver.server import WebhookReceiver

logger = logging.getLogger(__name__)


class CaptureService:
    """Owns every long-lived component and their start/stop order."""

    def __init__(self, settings: Settings, client: ShopifyClient | None = None):
        self.settings = settings
        self.client = client or ShopifyClient(
            shop=settings.shop,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            api_version=settings.api_version,
            capture_timeout_seconds=settings.capture_timeout_seconds,
            token_timeout_seconds=settings.token_timeout_seconds,
        )
        self.metrics = MetricsCollector()
        self.alert_manager = AlertManager(self.metrics)
        self.capture_logger = CaptureLogger(max_records=settings.history_size)
        self.scheduler = DeferredCaptureScheduler(
            capture_client=self.client,
            retry_policy=RetryPolicy(
                schedule=settings.capture_retry_schedule,
                max_retries=settings.capture_max_retries,
            ),
            capture_logger=self.capture_logger,
            metrics=self.metrics,
            alert_manager=self.alert_manager,
            sweep_interval_seconds=settings.sweep_interval_seconds,
            reconcile_interval_seconds=settings.reconcile_interval_seconds,
        )
        self.processor = OrderProcessor(
            client=self.client,
            scheduler=self.scheduler,
            deferral=timedelta(days=settings.deferred_capture_days),
        )
        self.worker = OrderWebhookWorker(self.processor, history_size=settings.history_size)
        self.receiver = WebhookReceiver(
            processor=self.processor,
            worker=self.worker,
            host=settings.host,
            port=settings.port,
            shop=settings.shop,
            metrics=self.metrics,
        )

    def start(self) -> None:
        self.scheduler.start()
        self.worker.start()
        self.receiver.start()
        logger.info("Serving shop %s on port %s", self.settings.shop, self.receiver.port)
        try:
            self.client.refresh_token()
        except PlatformError as e:
            logger.error("Failed to refresh access token on startup: %s", e)

    def stop(self) -> None:
        self.receiver.stop()
        self.worker.stop()
        self.scheduler.stop()


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    service = CaptureService(settings)
    stopped = threading.Event()

    def _shutdown(signum, frame):
        logger.info("%s received. Shutting down gracefully...", signal.Signals(signum).name)
        stopped.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    service.start()
    stopped.wait()
    service.stop()


if __name__ == "__main__":
    main()
