"""
HTTP clients for the storefront API.

``Storefront`` covers the customer side (catalog, search, cart, checkout,
contact form). ``OwnerSession`` holds the owner's login state and
``OwnerDashboard`` drives the product/order management endpoints with it.
Both share a ``StorefrontClient``, which counts every call against a
``ClientLockout`` before it reaches the network.
"""
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional

import requests

from analytics import DashboardStats, dashboard_stats
from database import as_utc, utcnow
from errors import (
    AuthenticationError,
    InvalidRequestError,
    LockedOutError,
    NotFoundError,
    SoldOutError,
    StorefrontError,
)
from lockout import (
    FAILED_LOGIN_LIMIT,
    FAILED_LOGIN_WINDOW,
    LOCKOUT_DURATION,
    RATE_LIMIT_MAX_CALLS,
    RATE_LIMIT_WINDOW,
    SlidingWindowCounter,
)
from schemas import OrderState

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = (401, 403)


class ApiError(StorefrontError):
    """Raised for any non-2xx API response."""

    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self.payload = payload
        self.message = payload.get("message") or f"Request failed with status {status_code}"
        super().__init__(self.message)


class ClientLockout:
    """
    Client-side lockout persisted to a JSON file.

    Locks after two failed logins for one username inside the failure window,
    or after more than fifty calls in ten seconds. A login attempt while
    locked pushes the expiry out again. Every transition is passed to
    ``reporter`` so it can be written to the server's security log.
    """

    def __init__(
        self,
        state_path: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
        reporter: Optional[Callable[[str], None]] = None,
    ):
        self.state_path = Path(state_path) if state_path else None
        self.clock = clock
        self.reporter = reporter
        self.calls = SlidingWindowCounter(RATE_LIMIT_MAX_CALLS, RATE_LIMIT_WINDOW)
        self._locked_until: Optional[datetime] = None
        self._failures: dict[str, list[datetime]] = {}
        self._load()

    def _load(self) -> None:
        if self.state_path is None or not self.state_path.exists():
            return
        data = json.loads(self.state_path.read_text())
        if data.get("lockedUntil"):
            self._locked_until = as_utc(datetime.fromisoformat(data["lockedUntil"]))
        self._failures = {
            username: [as_utc(datetime.fromisoformat(ts)) for ts in stamps]
            for username, stamps in data.get("failures", {}).items()
        }

    def _save(self) -> None:
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "lockedUntil": self._locked_until.isoformat() if self._locked_until else None,
            "failures": {
                username: [ts.isoformat() for ts in stamps]
                for username, stamps in self._failures.items()
            },
        }
        self.state_path.write_text(json.dumps(data, indent=2))

    def _report(self, reason: str) -> None:
        logger.warning("Lockout: %s", reason)
        if self.reporter is not None:
            self.reporter(reason)

    @property
    def locked_until(self) -> Optional[datetime]:
        """Stored expiry; may be in the past until ``refresh`` runs."""
        return self._locked_until

    def refresh(self) -> Optional[datetime]:
        """Clear an expired lock and return the current expiry, if any."""
        if self._locked_until is not None and self._locked_until <= self.clock():
            self._locked_until = None
            self._save()
            self._report("Lockout expired")
        return self._locked_until

    def is_locked(self) -> bool:
        return self.refresh() is not None

    def ensure_unlocked(self) -> None:
        until = self.refresh()
        if until is not None:
            raise LockedOutError(until)

    def lock(self, reason: str) -> datetime:
        self._locked_until = self.clock() + LOCKOUT_DURATION
        self._save()
        self._report(f"Locked until {self._locked_until.isoformat()}: {reason}")
        return self._locked_until

    def record_call(self) -> None:
        self.ensure_unlocked()
        if self.calls.hit("api", self.clock()):
            self.calls.reset("api")
            reason = f"more than {RATE_LIMIT_MAX_CALLS} API calls in {int(RATE_LIMIT_WINDOW.total_seconds())}s"
            raise LockedOutError(self.lock(reason), reason)

    def record_failed_login(self, username: str) -> Optional[datetime]:
        """Count a failed login; returns the lock expiry when locked."""
        if self.is_locked():
            return self.lock(f"login attempt for {username} during lockout")
        now = self.clock()
        cutoff = now - FAILED_LOGIN_WINDOW
        failures = [ts for ts in self._failures.get(username, []) if ts > cutoff]
        failures.append(now)
        if len(failures) >= FAILED_LOGIN_LIMIT:
            self._failures.pop(username, None)
            return self.lock(f"{len(failures)} consecutive failed logins for {username}")
        self._failures[username] = failures
        self._save()
        return None

    def record_successful_login(self, username: str) -> None:
        if self._failures.pop(username, None) is not None:
            self._save()


class StorefrontClient:
    """Thin JSON wrapper over a ``requests``-compatible session."""

    def __init__(
        self,
        base_url: str = "",
        session: Optional[requests.Session] = None,
        lockout: Optional[ClientLockout] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.lockout = lockout if lockout is not None else ClientLockout()
        if self.lockout.reporter is None:
            self.lockout.reporter = self.report_security_event

    def _send(self, method: str, path: str, **kwargs) -> Any:
        response = self.session.request(method, self.base_url + path, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            payload = {"message": response.text}
        if response.status_code >= 400:
            raise ApiError(response.status_code, payload if isinstance(payload, dict) else {})
        return payload

    def request(self, method: str, path: str, **kwargs) -> Any:
        self.lockout.record_call()
        return self._send(method, path, **kwargs)

    def report_security_event(self, reason: str) -> None:
        """Append to the server security log; failures are logged, not raised."""
        try:
            self._send("POST", "/api/security/log", json={"reason": reason})
        except (ApiError, requests.RequestException) as e:
            logger.warning("Could not report security event %r: %s", reason, e)


# --- Customer side ---


def search_products(products: list[dict], term: str) -> list[dict]:
    """Case-insensitive substring match over title and description."""
    needle = term.strip().lower()
    if not needle:
        return list(products)
    return [
        p
        for p in products
        if needle in p.get("title", "").lower()
        or needle in (p.get("description") or "").lower()
    ]


@dataclass
class CartItem:
    id: str
    title: str
    price: float
    image: str = ""
    quantity: int = 1

    @property
    def total(self) -> float:
        return self.price * self.quantity


class Cart:
    """In-memory cart; lives as long as the ``Storefront`` holding it."""

    def __init__(self):
        self.items: list[CartItem] = []

    def __len__(self) -> int:
        return len(self.items)

    def _find(self, product_id: str) -> CartItem:
        for item in self.items:
            if item.id == product_id:
                return item
        raise NotFoundError("Cart item", product_id)

    def add(self, product: dict) -> CartItem:
        if product.get("soldOut"):
            raise SoldOutError([product["title"]])
        product_id = product.get("id") or product["title"]
        for item in self.items:
            if item.id == product_id:
                item.quantity += 1
                return item
        item = CartItem(
            id=product_id,
            title=product["title"],
            price=float(product["price"]),
            image=product.get("image", ""),
        )
        self.items.append(item)
        return item

    def remove(self, product_id: str) -> None:
        self.items = [i for i in self.items if i.id != product_id]

    def set_quantity(self, product_id: str, quantity: int) -> None:
        """Quantities below one are ignored; use ``remove`` to drop an item."""
        item = self._find(product_id)
        if quantity < 1:
            return
        item.quantity = quantity

    def increment(self, product_id: str) -> None:
        self.set_quantity(product_id, self._find(product_id).quantity + 1)

    def decrement(self, product_id: str) -> None:
        self.set_quantity(product_id, self._find(product_id).quantity - 1)

    @property
    def count(self) -> int:
        return sum(i.quantity for i in self.items)

    @property
    def subtotal(self) -> float:
        return sum(i.total for i in self.items)

    def clear(self) -> None:
        self.items = []

    def order_lines(self) -> list[dict]:
        return [
            {"id": i.id, "title": i.title, "price": i.price, "quantity": i.quantity}
            for i in self.items
        ]


class Storefront:
    def __init__(self, client: StorefrontClient):
        self.client = client
        self.products: list[dict] = []
        self.cart = Cart()

    def load_products(self) -> list[dict]:
        self.products = self.client.request("GET", "/api/products")
        return self.products

    def search(self, term: str) -> list[dict]:
        self.client.lockout.ensure_unlocked()
        return search_products(self.products, term)

    def add_to_cart(self, product_id: str) -> CartItem:
        self.client.lockout.ensure_unlocked()
        for product in self.products:
            if product.get("id") == product_id:
                return self.cart.add(product)
        raise NotFoundError("Product", product_id)

    def remove_from_cart(self, product_id: str) -> None:
        self.client.lockout.ensure_unlocked()
        self.cart.remove(product_id)

    def set_quantity(self, product_id: str, quantity: int) -> None:
        self.client.lockout.ensure_unlocked()
        self.cart.set_quantity(product_id, quantity)

    def increment(self, product_id: str) -> None:
        self.client.lockout.ensure_unlocked()
        self.cart.increment(product_id)

    def decrement(self, product_id: str) -> None:
        self.client.lockout.ensure_unlocked()
        self.cart.decrement(product_id)

    def checkout(self, phone: str, city: str, location: str) -> dict:
        """Place the cart as an order; the cart is cleared only on success."""
        if not (phone and city and location):
            raise InvalidRequestError("Please fill in all shipping information fields")
        if not self.cart.items:
            raise InvalidRequestError("Your cart is empty")
        order = {
            "products": self.cart.order_lines(),
            "phone": phone,
            "city": city,
            "location": location,
        }
        try:
            result = self.client.request("POST", "/api/orders", json=order)
        except ApiError as e:
            if e.payload.get("soldOutProducts"):
                raise SoldOutError(e.payload["soldOutProducts"]) from e
            raise
        self.cart.clear()
        return result

    def send_contact(self, name: str, email: str, phone: str, message: str) -> dict:
        return self.client.request(
            "POST",
            "/api/contact",
            json={"name": name, "email": email, "phone": phone, "message": message},
        )


# --- Owner side ---


class OwnerSession:
    """Unauthenticated until login/register succeeds; any auth failure drops back."""

    def __init__(self, client: StorefrontClient):
        self.client = client
        self.token: Optional[str] = None
        self.username: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def _authenticated(self, data: dict) -> None:
        self.token = data["token"]
        self.username = data["username"]

    def signup_allowed(self) -> bool:
        return self.client.request("GET", "/api/auth/check-signup")["signupAllowed"]

    def register(self, username: str, password: str) -> None:
        data = self.client.request(
            "POST", "/api/register", json={"username": username, "password": password}
        )
        self._authenticated(data)

    def login(self, username: str, password: str) -> None:
        lockout = self.client.lockout
        if lockout.is_locked():
            raise LockedOutError(lockout.record_failed_login(username))
        try:
            data = self.client.request(
                "POST", "/api/login", json={"username": username, "password": password}
            )
        except ApiError as e:
            if e.status_code in AUTH_FAILURE_STATUSES + (429,):
                until = lockout.record_failed_login(username)
                if until is not None:
                    raise LockedOutError(until) from e
            raise
        lockout.record_successful_login(username)
        self._authenticated(data)

    def logout(self) -> None:
        self.token = None
        self.username = None

    def verify(self) -> bool:
        if self.token is None:
            return False
        try:
            self.request("GET", "/api/auth/verify")
        except ApiError as e:
            if e.status_code in AUTH_FAILURE_STATUSES:
                return False
            raise
        return True

    def report_suspicious(self, reason: str) -> None:
        self.client.report_security_event(reason)
        self.logout()

    def request(self, method: str, path: str, **kwargs) -> Any:
        if self.token is None:
            raise AuthenticationError("Not logged in")
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {self.token}"
        try:
            return self.client.request(method, path, headers=headers, **kwargs)
        except ApiError as e:
            if e.status_code in AUTH_FAILURE_STATUSES:
                username = self.username
                self.logout()
                until = self.client.lockout.record_failed_login(username)
                if until is not None:
                    raise LockedOutError(until) from e
            raise


class OwnerDashboard:
    def __init__(self, session: OwnerSession):
        self.session = session

    def products(self) -> list[dict]:
        return self.session.request("GET", "/api/superadmin/products")

    def add_product(
        self,
        title: str,
        description: str,
        price: float,
        image: BinaryIO,
        filename: str,
        sold_out: bool = False,
    ) -> dict:
        result = self.session.request(
            "POST",
            "/api/products",
            data={
                "title": title,
                "description": description,
                "price": str(price),
                "soldOut": "true" if sold_out else "false",
            },
            files={"image": (filename, image)},
        )
        return result["product"]

    def set_sold_out(self, product_id: str, sold_out: bool) -> dict:
        result = self.session.request(
            "PUT", f"/api/products/{product_id}", json={"soldOut": sold_out}
        )
        return result["product"]

    def delete_product(self, product_id: str, public_id: Optional[str] = None) -> None:
        kwargs = {"json": {"public_id": public_id}} if public_id else {}
        self.session.request("DELETE", f"/api/products/{product_id}", **kwargs)

    def orders(self) -> list[dict]:
        return self.session.request("GET", "/api/orders")

    def set_order_state(self, order_id: str, state: str) -> None:
        try:
            state = OrderState(state)
        except ValueError:
            raise InvalidRequestError(f"Invalid order state: {state}")
        self.session.request("PUT", f"/api/orders/{order_id}", json={"state": state.value})

    def delete_order(self, order_id: str) -> None:
        self.session.request("DELETE", f"/api/orders/{order_id}")

    def clear_orders(self) -> int:
        return self.session.request("DELETE", "/api/orders")["deleted"]

    def fetch_analytics(self) -> dict:
        return self.session.request("GET", "/api/superadmin/analytics")

    def contacts(self) -> list[dict]:
        return self.session.request("GET", "/api/superadmin/contacts")

    def stats(self, today: Optional[date] = None) -> DashboardStats:
        return dashboard_stats(self.orders(), self.products(), today or date.today())
