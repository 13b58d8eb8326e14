import json
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
from apscheduler.jobstores.base import ConflictingIdError, JobLookupError

from src.capture_scheduler.logger import CaptureLogger
from src.capture_scheduler.retry import RetryPolicy
from src.capture_scheduler.scheduler import DeferredCaptureScheduler
from src.errors import RemoteError
from src.observability.alerting import AlertManager
from src.observability.metrics import MetricsCollector
from src.order_processor.processor import OrderProcessor
from src.order_processor.worker import OrderWebhookWorker
from src.platform_client.client import ShopifyClient
from src.utils.factories import OrderFactory, TransactionFactory
from src.webhook_receiver.server import WebhookReceiver


API_VERSION = "2024-01"


# ---------------------------------------------------------------------------
# Scheduler collaborators
# ---------------------------------------------------------------------------

class FakeCaptureClient:
    """Records capture calls; can be told to fail or to block."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.error: Exception | None = None
        self.errors: list[Exception] = []  # consumed one per call before `error`
        self.release = threading.Event()
        self.release.set()
        self.entered = threading.Event()
        self._lock = threading.Lock()

    def capture(self, order_id: str, transaction_id: str) -> dict:
        with self._lock:
            self.calls.append((order_id, transaction_id))
            error = self.errors.pop(0) if self.errors else self.error
        self.entered.set()
        self.release.wait(timeout=5)
        if error is not None:
            raise error
        return {"kind": "capture", "status": "success", "parent_id": transaction_id}

    def calls_for(self, order_id: str) -> list[tuple[str, str]]:
        with self._lock:
            return [c for c in self.calls if c[0] == order_id]


class ManualClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ManualJob:
    """A job held by ManualJobScheduler until the test fires it."""

    def __init__(self, job_id: str, func, trigger: str, args: tuple, run_date=None, seconds=None):
        self.id = job_id
        self.func = func
        self.trigger = trigger
        self.args = args
        self.run_date = run_date
        self.seconds = seconds
        self.removed = False

    def fire(self):
        # Runs even after removal, like a job the executor had already picked up
        return self.func(*self.args)


class ManualJobScheduler:
    """Stands in for a BackgroundScheduler; jobs only run when the test fires them.

    Calling the instance returns itself, so it can be passed as the scheduler factory.
    """

    def __init__(self):
        self.jobs: list[ManualJob] = []
        self.listeners: list = []
        self.running = False

    def __call__(self) -> "ManualJobScheduler":
        return self

    def add_listener(self, callback, mask=None) -> None:
        self.listeners.append(callback)

    def start(self) -> None:
        self.running = True

    def shutdown(self, wait: bool = True) -> None:
        self.running = False
        for job in self.active():
            job.removed = True

    def add_job(self, func, trigger, id=None, args=(), run_date=None, seconds=None,
                replace_existing=False, **kwargs) -> ManualJob:
        existing = [j for j in self.active() if j.id == id]
        if existing and not replace_existing:
            raise ConflictingIdError(id)
        for job in existing:
            job.removed = True
        job = ManualJob(id, func, trigger, tuple(args), run_date=run_date, seconds=seconds)
        self.jobs.append(job)
        return job

    def remove_job(self, job_id: str) -> None:
        for job in self.active():
            if job.id == job_id:
                job.removed = True
                return
        raise JobLookupError(job_id)

    def active(self) -> list[ManualJob]:
        return [j for j in self.jobs if not j.removed]

    def armed(self) -> list[ManualJob]:
        """Capture jobs still waiting to run."""
        return [j for j in self.active() if j.trigger == "date"]

    def last(self) -> ManualJob:
        return [j for j in self.jobs if j.trigger == "date"][-1]

    def get(self, job_id: str) -> ManualJob:
        return [j for j in self.active() if j.id == job_id][-1]


def wait_for(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def capture_client():
    return FakeCaptureClient()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def job_scheduler():
    return ManualJobScheduler()


@pytest.fixture
def capture_logger():
    return CaptureLogger()


@pytest.fixture
def metrics():
    return MetricsCollector(window_seconds=300)


@pytest.fixture
def alert_manager(metrics):
    return AlertManager(metrics=metrics, threshold=0.10)


@pytest.fixture
def retry_policy():
    return RetryPolicy()


@pytest.fixture
def manual_scheduler(capture_client, clock, job_scheduler, capture_logger, metrics):
    """Started scheduler whose time and job runs are driven by the test."""
    sched = DeferredCaptureScheduler(
        capture_client=capture_client,
        clock=clock,
        job_scheduler_factory=job_scheduler,
        capture_logger=capture_logger,
        metrics=metrics,
    )
    sched.start()
    yield sched
    sched.stop()


@pytest.fixture
def scheduler(capture_client, capture_logger):
    """Started scheduler on a real BackgroundScheduler with a fast sweep."""
    sched = DeferredCaptureScheduler(
        capture_client=capture_client,
        capture_logger=capture_logger,
        sweep_interval_seconds=0.1,
    )
    sched.start()
    yield sched
    sched.stop()


# ---------------------------------------------------------------------------
# Fake Shopify Admin API
# ---------------------------------------------------------------------------

_ORDER = re.compile(rf"^/admin/api/{API_VERSION}/orders/(\w+)\.json$")
_TRANSACTIONS = re.compile(rf"^/admin/api/{API_VERSION}/orders/(\w+)/transactions\.json$")


class _ShopifyHandler(BaseHTTPRequestHandler):
    def _reply(self, code: int, body: dict | None = None) -> None:
        data = json.dumps(body or {}).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _read_body(self) -> bytes:
        return self.rfile.read(int(self.headers.get("Content-Length", 0)))

    def _authorized(self, config: dict) -> bool:
        return self.headers.get("X-Shopify-Access-Token") == config["access_token"]

    def do_POST(self):
        config = self.server.config  # type: ignore[attr-defined]
        body = self._read_body()
        path = self.path.split("?")[0]

        if path == "/admin/oauth/access_token":
            with config["lock"]:
                config["token_requests"].append(body.decode())
            self._reply(config["token_status"], {
                "access_token": config["access_token"],
                "expires_in": config["expires_in"],
                "scope": config["scope"],
            })
            return

        match = _TRANSACTIONS.match(path)
        if not match:
            self._reply(404, {"errors": "Not Found"})
            return
        if not self._authorized(config):
            self._reply(401, {"errors": "Invalid API key or access token"})
            return

        if config["response_delay"] > 0:
            time.sleep(config["response_delay"])

        order_id = match.group(1)
        transaction = json.loads(body)["transaction"]
        with config["lock"]:
            config["captures"].append((order_id, str(transaction["parent_id"])))
            if config["capture_status"] != 201:
                self._reply(config["capture_status"], {"errors": "Internal Server Error"})
                return
            if order_id in config["forbidden"]:
                self._reply(403, {"errors": "This action requires merchant approval"})
                return
            parent_id = str(transaction["parent_id"])
            if parent_id in config["captured"]:
                self._reply(422, {"errors": {"base": [
                    "The authorized transaction has already been captured"
                ]}})
                return
            config["captured"].add(parent_id)
        self._reply(201, {"transaction": {
            "id": 9000000000001,
            "kind": "capture",
            "status": "success",
            "parent_id": int(parent_id),
        }})

    def do_GET(self):
        config = self.server.config  # type: ignore[attr-defined]
        path = self.path.split("?")[0]
        if not self._authorized(config):
            self._reply(401, {"errors": "Invalid API key or access token"})
            return

        if path == f"/admin/api/{API_VERSION}/shop.json":
            self._reply(200, {"shop": {"name": "test-shop", "myshopify_domain": "test-shop.myshopify.com"}})
            return
        if path == f"/admin/api/{API_VERSION}/orders.json":
            with config["lock"]:
                orders = list(config["orders"].values())
            self._reply(200, {"orders": orders})
            return

        match = _TRANSACTIONS.match(path) or _ORDER.match(path)
        if not match:
            self._reply(404, {"errors": "Not Found"})
            return
        order_id = match.group(1)
        with config["lock"]:
            if order_id in config["forbidden"]:
                self._reply(403, {"errors": "This action requires merchant approval"})
                return
            order = config["orders"].get(order_id)
            transactions = list(config["transactions"].get(order_id, []))
        if order is None:
            self._reply(404, {"errors": "Not Found"})
        elif match.re is _TRANSACTIONS:
            self._reply(200, {"transactions": transactions})
        else:
            self._reply(200, {"order": order})

    def log_message(self, format, *args):
        pass


class FakeShopifyServer:
    """In-process stand-in for a shop's Admin API."""

    def __init__(self, host: str = "127.0.0.1", port: int = 0):
        self._host = host
        self._port = port
        self.config = {
            "access_token": "shpat_test_token",
            "expires_in": 86399,
            "scope": "write_orders,read_all_orders",
            "token_status": 200,
            "capture_status": 201,
            "response_delay": 0,
            "orders": {},
            "transactions": {},
            "forbidden": set(),
            "captured": set(),
            "captures": [],
            "token_requests": [],
            "lock": threading.Lock(),
        }
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def add_order(self, order: dict, transactions: list[dict] | None = None) -> dict:
        order_id = str(order["id"])
        with self.config["lock"]:
            self.config["orders"][order_id] = order
            self.config["transactions"][order_id] = transactions or []
        return order

    def start(self) -> None:
        self._server = ThreadingHTTPServer((self._host, self._port), _ShopifyHandler)
        self._server.config = self.config  # type: ignore[attr-defined]
        self._port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

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

    def get_captures(self) -> list[tuple[str, str]]:
        with self.config["lock"]:
            return list(self.config["captures"])


@pytest.fixture
def shopify_server():
    server = FakeShopifyServer()
    server.start()
    yield server
    server.stop()


def make_client(server: FakeShopifyServer, **kwargs) -> ShopifyClient:
    return ShopifyClient(
        shop="test-shop",
        client_id="client-id",
        client_secret="client-secret",
        api_version=API_VERSION,
        base_url=f"{server.url}/admin/api/{API_VERSION}",
        token_url=f"{server.url}/admin/oauth/access_token",
        **kwargs,
    )


@pytest.fixture
def shopify_client(shopify_server):
    return make_client(shopify_server)


@pytest.fixture
def processor(shopify_client, manual_scheduler):
    return OrderProcessor(client=shopify_client, scheduler=manual_scheduler)


@pytest.fixture
def receiver(processor):
    worker = OrderWebhookWorker(processor, poll_timeout=0.1)
    server = WebhookReceiver(
        processor=processor, worker=worker, shop="test-shop", metrics=processor.scheduler.metrics
    )
    worker.start()
    server.start()
    yield server, worker
    server.stop()
    worker.stop()


@pytest.fixture
def order_factory():
    return OrderFactory


@pytest.fixture
def transaction_factory():
    return TransactionFactory


@pytest.fixture
def remote_error():
    return RemoteError("Platform error 503 capturing payment", 503)
