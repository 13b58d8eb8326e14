import logging
import threading
from datetime import datetime, timedelta, timezone

import requests

from src.errors import (
    AlreadyCaptured,
    NetworkTimeout,
    NotFound,
    PermissionDenied,
    PlatformError,
    RemoteError,
)
from src.models.order import Transaction

logger = logging.getLogger(__name__)


class ShopifyClient:
    """Shopify Admin REST API client using the client-credentials grant."""

    DEFAULT_API_VERSION = "2024-01"
    REQUIRED_SCOPES = ["write_orders", "read_orders"]
    # Refresh this long before the token actually expires
    TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)

    def __init__(
        self,
        shop: str,
        client_id: str,
        client_secret: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout_seconds: float = 10,
        capture_timeout_seconds: float = 30,
        token_timeout_seconds: float = 10,
        base_url: str | None = None,
        token_url: str | None = None,
        session: requests.Session | None = None,
    ):
        self.shop = shop
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self.capture_timeout_seconds = capture_timeout_seconds
        self.token_timeout_seconds = token_timeout_seconds
        self.base_url = (
            base_url or f"https://{shop}.myshopify.com/admin/api/{api_version}"
        ).rstrip("/")
        self.token_url = token_url or f"https://{shop}.myshopify.com/admin/oauth/access_token"
        self.session = session or requests.Session()

        self.access_token: str | None = None
        self.token_expiry: datetime | None = None
        self.scopes: list[str] = []
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Token lifecycle
    # ------------------------------------------------------------------ #

    def refresh_token(self) -> str:
        """Fetch a new access token and check the granted scopes."""
        logger.info("Refreshing access token for shop %s", self.shop)
        try:
            resp = self.session.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "client_credentials",
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.token_timeout_seconds,
            )
        except requests.exceptions.Timeout as e:
            raise NetworkTimeout(f"Token refresh timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise RemoteError(f"Token refresh failed: {e}") from e

        self._raise_for_status(resp, "refreshing access token")
        data = resp.json()

        self.access_token = data["access_token"]
        expires_in = data.get("expires_in")
        self.token_expiry = (
            datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            if expires_in is not None
            else None
        )
        self.scopes = [s.strip() for s in data.get("scope", "").split(",") if s.strip()]
        logger.info(
            "Access token refreshed (expires in %ss, scopes: %s)",
            expires_in, ",".join(self.scopes),
        )
        self.verify_scopes()
        return self.access_token

    def verify_scopes(self) -> list[str]:
        """Return the required scopes missing from the current token."""
        missing = []
        if "write_orders" not in self.scopes:
            missing.append("write_orders")
        # read_all_orders implies read_orders
        if "read_orders" not in self.scopes and "read_all_orders" not in self.scopes:
            missing.append("read_orders (or read_all_orders)")

        if missing:
            logger.warning(
                "Missing scopes %s: add them under Admin API integration and reinstall the app",
                missing,
            )
        else:
            logger.info("All required scopes are granted")
        return missing

    def token_is_valid(self) -> bool:
        if not self.access_token:
            return False
        if self.token_expiry is None:
            return True
        return self.token_expiry - self.TOKEN_EXPIRY_BUFFER > datetime.now(timezone.utc)

    def ensure_valid_token(self) -> str:
        with self._token_lock:
            if not self.token_is_valid():
                logger.info("Token expired or about to expire, refreshing...")
                self.refresh_token()
            return self.access_token  # type: ignore[return-value]

    # ------------------------------------------------------------------ #
    # Orders and transactions
    # ------------------------------------------------------------------ #

    def get_order(self, order_id: str) -> dict:
        data = self._request("GET", f"/orders/{order_id}.json", context=f"reading order {order_id}")
        return data["order"]

    def get_order_transactions(self, order_id: str) -> list[Transaction]:
        data = self._request(
            "GET",
            f"/orders/{order_id}/transactions.json",
            context=f"reading transactions for order {order_id}",
        )
        return [Transaction.from_dict(t) for t in data.get("transactions", [])]

    def get_authorized_transaction(self, order_id: str) -> Transaction | None:
        """The successful, not yet captured authorization for an order, if any."""
        for transaction in self.get_order_transactions(order_id):
            if transaction.is_capturable_authorization:
                return transaction
        return None

    def capture(self, order_id: str, transaction_id: str) -> dict:
        logger.info("Capturing payment for order %s, transaction %s", order_id, transaction_id)
        data = self._request(
            "POST",
            f"/orders/{order_id}/transactions.json",
            json={"transaction": {"kind": "capture", "parent_id": transaction_id}},
            timeout=self.capture_timeout_seconds,
            context=f"capturing payment for order {order_id}",
        )
        return data["transaction"]

    def get_recent_orders(self, limit: int = 5) -> list[dict]:
        data = self._request(
            "GET",
            "/orders.json",
            params={"limit": limit, "status": "any"},
            context="listing recent orders",
        )
        return data.get("orders", [])

    def get_shop_info(self) -> dict:
        data = self._request("GET", "/shop.json", context="reading shop info")
        return data["shop"]

    # ------------------------------------------------------------------ #
    # HTTP plumbing
    # ------------------------------------------------------------------ #

    def _request(
        self,
        method: str,
        path: str,
        *,
        context: str,
        timeout: float | None = None,
        **kwargs,
    ) -> dict:
        token = self.ensure_valid_token()
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": token,
        }
        try:
            resp = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=timeout or self.timeout_seconds,
                **kwargs,
            )
        except requests.exceptions.Timeout as e:
            raise NetworkTimeout(f"Timed out {context}") from e
        except requests.exceptions.RequestException as e:
            raise RemoteError(f"Error {context}: {e}") from e

        self._raise_for_status(resp, context)
        if not resp.content:
            return {}
        return resp.json()

    @staticmethod
    def _raise_for_status(resp: requests.Response, context: str) -> None:
        if 200 <= resp.status_code < 300:
            return
        try:
            body = resp.json()
        except ValueError:
            body = resp.text

        status = resp.status_code
        if status in (401, 403):
            raise PermissionDenied(
                f"Permission denied {context}; check the app's scopes", status, body
            )
        if status == 404:
            raise NotFound(f"Not found {context}", status, body)
        if status == 422 and "captur" in str(body).lower():
            raise AlreadyCaptured(f"Already captured {context}: {body}", status, body)
        if status >= 500 or status == 429:
            raise RemoteError(f"Platform error {status} {context}: {body}", status, body)
        raise PlatformError(f"Request rejected ({status}) {context}: {body}", status, body)
