import json
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from urllib.parse import parse_qs, urlparse

from src.errors import NoAuthorizedTransaction, PlatformError
from src.observability.metrics import MetricsCollector
from src.order_processor.processor import OrderProcessor, has_flag
from src.order_processor.worker import ORDER_CREATED, ORDER_UPDATED, OrderWebhookWorker

logger = logging.getLogger(__name__)

WEBHOOK_TOPICS = {
    "/webhooks/orders/create": ORDER_CREATED,
    "/webhooks/orders/updated": ORDER_UPDATED,
}

DEFAULT_TEST_DELAY_MS = 120000


class _WebhookHandler(BaseHTTPRequestHandler):
    """HTTP request handler for order webhooks and diagnostics."""

    def _send_json(self, code: int, body: dict) -> None:
        data = json.dumps(body, default=str).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _send_text(self, code: int, text: str) -> None:
        data = text.encode()
        self.send_response(code)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def do_GET(self):
        ctx = self.server.context  # type: ignore[attr-defined]
        path = urlparse(self.path).path

        if path == "/health":
            self._send_json(200, {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "shop": ctx["shop"],
                "uptime": time.monotonic() - ctx["started_at"],
                "scheduledJobs": len(ctx["processor"].scheduler),
                "pendingWebhooks": ctx["worker"].pending(),
                "captures": ctx["metrics"].snapshot() if ctx["metrics"] is not None else None,
            })
        elif path == "/ping":
            self._send_text(200, "pong")
        elif path == "/scheduled-jobs":
            jobs = ctx["processor"].list_scheduled_jobs()
            self._send_json(200, {
                "count": len(jobs),
                "jobs": jobs,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })
        elif path.startswith("/debug/order/"):
            self._debug_order(ctx["processor"], path.rsplit("/", 1)[-1])
        else:
            self._send_json(404, {"error": "not found"})

    def do_POST(self):
        ctx = self.server.context  # type: ignore[attr-defined]
        parsed = urlparse(self.path)
        path = parsed.path

        if path in WEBHOOK_TOPICS:
            self._receive_webhook(ctx["worker"], WEBHOOK_TOPICS[path])
        elif path.startswith("/debug/capture/"):
            self._manual_capture(ctx["processor"], path.rsplit("/", 1)[-1])
        elif path.startswith("/test-schedule/"):
            delay = parse_qs(parsed.query).get("delay", [DEFAULT_TEST_DELAY_MS])[0]
            self._test_schedule(ctx["processor"], path.rsplit("/", 1)[-1], delay)
        else:
            self._send_json(404, {"error": "not found"})

    def _receive_webhook(self, worker: OrderWebhookWorker, topic: str) -> None:
        content_length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(content_length)

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, ValueError):
            self._send_json(400, {"error": "invalid JSON"})
            return
        if not isinstance(payload, dict) or "id" not in payload:
            self._send_json(400, {"error": "missing fields: ['id']"})
            return

        # Processing happens on the worker thread, after the acknowledgement
        worker.submit(topic, payload)
        self._send_text(200, "Webhook received")

    def _debug_order(self, processor: OrderProcessor, order_id: str) -> None:
        try:
            order = processor.client.get_order(order_id)
            transactions = processor.client.get_order_transactions(order_id)
        except PlatformError as e:
            self._send_json(e.status_code or 500, {"error": str(e)})
            return
        self._send_json(200, {
            "order_id": order_id,
            "financial_status": order.get("financial_status"),
            "note_attributes": order.get("note_attributes"),
            "tags": order.get("tags"),
            "buy_now": has_flag(order, "buy_now"),
            "pay_later": has_flag(order, "pay_later"),
            "transactions": [t.__dict__ for t in transactions],
            "has_authorization": any(t.kind == "authorization" for t in transactions),
            "has_successful_auth": any(
                t.kind == "authorization" and t.status == "success" for t in transactions
            ),
        })

    def _manual_capture(self, processor: OrderProcessor, order_id: str) -> None:
        logger.info("Manual capture for order %s", order_id)
        try:
            transaction = processor.capture_now(order_id)
        except NoAuthorizedTransaction as e:
            self._send_json(400, {"error": str(e)})
            return
        except PlatformError as e:
            self._send_json(500, {"error": str(e)})
            return
        self._send_json(200, {
            "success": True,
            "message": "Payment captured manually",
            "transaction": transaction,
        })

    def _test_schedule(self, processor: OrderProcessor, order_id: str, delay) -> None:
        try:
            delay_ms = int(delay)
        except (TypeError, ValueError):
            self._send_json(400, {"error": f"invalid delay: {delay}"})
            return

        logger.info("Manually scheduling capture for order %s in %dms", order_id, delay_ms)
        due_at = processor.scheduler.clock() + timedelta(milliseconds=delay_ms)
        try:
            job_id = processor.schedule_payment(order_id, due_at)
        except NoAuthorizedTransaction as e:
            self._send_json(400, {"error": str(e)})
            return
        except PlatformError as e:
            self._send_json(500, {"error": str(e)})
            return
        self._send_json(200, {
            "success": True,
            "message": f"Payment capture scheduled for order {order_id}",
            "jobId": job_id,
            "scheduledJobs": processor.list_scheduled_jobs(),
            "captureIn": f"{delay_ms}ms",
        })

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


class WebhookReceiver:
    """HTTP server that accepts order webhooks and serves diagnostics."""

    def __init__(
        self,
        processor: OrderProcessor,
        worker: OrderWebhookWorker,
        host: str = "127.0.0.1",
        port: int = 0,
        shop: str | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._host = host
        self._port = port
        self._context = {
            "processor": processor,
            "worker": worker,
            "shop": shop,
            "metrics": metrics,
            "started_at": time.monotonic(),
        }
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._server = ThreadingHTTPServer((self._host, self._port), _WebhookHandler)
        self._server.context = self._context  # type: ignore[attr-defined]
        # Get the actual port (useful when port=0)
        self._port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info("Webhook receiver listening on %s:%s", self._host, self._port)

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}"

    @property
    def port(self) -> int:
        return self._port
