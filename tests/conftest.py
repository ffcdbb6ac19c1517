"""Pytest fixtures for storefront tests."""

import asyncio
import json
import re
from datetime import datetime, timezone
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from storefront import db
from storefront.config import Settings

MP_URL = "https://api.mercadopago.test"
AUTH_URL = "https://auth.test"

USERS = {
    "token-ana": {
        "id": "user-ana",
        "email": "ana@example.com",
        "user_metadata": {"name": "Ana Souza"},
    },
    "token-bruno": {
        "id": "user-bruno",
        "email": "bruno@example.com",
        "user_metadata": {},
    },
}

PRODUCTS = [
    {
        "id": "p-camiseta", "name": "Camiseta Básica", "price": 59.90,
        "promo_price": None, "is_promo": False, "active": True,
        "weight": 0.3, "width": 20, "height": 2, "length": 30,
    },
    {
        "id": "p-bone", "name": "Boné Aba Curva", "price": 30.00,
        "promo_price": 25.00, "is_promo": True, "active": True,
        "weight": 0.2, "width": None, "height": None, "length": None,
    },
    {
        "id": "p-inativo", "name": "Jaqueta Antiga", "price": 199.90,
        "promo_price": None, "is_promo": False, "active": False,
        "weight": 0.8, "width": 30, "height": 8, "length": 40,
    },
]

VARIANTS = [
    ("p-camiseta", "M", 10),
    ("p-camiseta", "G", 5),
    ("p-bone", "U", 3),
    ("p-inativo", "U", 5),
]


class FakeMercadoPago:
    """
    In-memory Mercado Pago + identity provider, served through httpx.MockTransport.

    Payments created through POST /v1/payments can later be moved to another
    status with set_status() before a webhook is delivered.
    """

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.preferences: dict[str, dict] = {}
        self.idempotency: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.reject_next = False
        self.unavailable = False
        self.fetch_status: int | None = None
        self._next_id = 1000

    # ── test helpers ─────────────────────────────

    def add_payment(self, status, external_reference=None, payment_method_id="pix", payment_id=None):
        payment_id = payment_id or str(self._take_id())
        self.payments[payment_id] = {
            "id": int(payment_id) if payment_id.isdigit() else payment_id,
            "status": status,
            "external_reference": external_reference,
            "payment_method_id": payment_method_id,
        }
        return payment_id

    def set_status(self, payment_id, status):
        self.payments[str(payment_id)]["status"] = status

    def last_request(self, path):
        matches = [r for r in self.requests if r.url.path == path]
        return matches[-1] if matches else None

    def _take_id(self):
        self._next_id += 1
        return self._next_id

    # ── transport ────────────────────────────────

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "auth.test":
            return self._auth(request)
        if self.unavailable:
            return httpx.Response(503, json={"message": "service unavailable"})

        path = request.url.path
        if request.method == "POST" and path == "/v1/payments":
            return self._create_payment(request)
        if request.method == "POST" and path == "/checkout/preferences":
            return self._create_preference(request)
        match = re.fullmatch(r"/v1/payments/([^/]+)", path)
        if request.method == "GET" and match:
            return self._get_payment(match.group(1))
        return httpx.Response(404, json={"message": "route not found"})

    def _auth(self, request):
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        user = USERS.get(token)
        if user is None:
            return httpx.Response(401, json={"msg": "invalid JWT"})
        return httpx.Response(200, json=user)

    def _rejection(self):
        self.reject_next = False
        return httpx.Response(
            400,
            json={"message": "invalid payer email", "error": "bad_request", "status": 400},
        )

    def _create_payment(self, request):
        if self.reject_next:
            return self._rejection()
        key = request.headers.get("X-Idempotency-Key")
        if key in self.idempotency:
            return httpx.Response(201, json=self.idempotency[key])

        body = json.loads(request.content)
        payment_id = self.add_payment("pending", body.get("external_reference"), "pix")
        payment = {
            **self.payments[payment_id],
            "transaction_amount": body["transaction_amount"],
            "point_of_interaction": {
                "transaction_data": {
                    "qr_code": f"00020126-pix-{payment_id}",
                    "qr_code_base64": "iVBORw0KGgo=",
                },
            },
        }
        if key:
            self.idempotency[key] = payment
        return httpx.Response(201, json=payment)

    def _create_preference(self, request):
        if self.reject_next:
            return self._rejection()
        body = json.loads(request.content)
        preference_id = f"pref-{len(self.preferences) + 1}"
        self.preferences[preference_id] = body
        return httpx.Response(201, json={
            "id": preference_id,
            "init_point": f"https://mp.test/checkout?pref_id={preference_id}",
            "sandbox_init_point": f"https://sandbox.mp.test/checkout?pref_id={preference_id}",
        })

    def _get_payment(self, payment_id):
        if self.fetch_status is not None:
            return httpx.Response(self.fetch_status, json={"message": "unauthorized"})
        payment = self.payments.get(payment_id)
        if payment is None:
            return httpx.Response(404, json={"message": "Payment not found"})
        return httpx.Response(200, json=payment)


class FakeRedis:
    """Records PUBLISH calls instead of talking to Redis."""

    def __init__(self):
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        return 0

    def events(self, event_type=None):
        return [
            msg for _, msg in self.published
            if event_type is None or msg["event_type"] == event_type
        ]


class Database:
    """Synchronous helpers to seed and inspect the test database."""

    def __init__(self, url):
        self.url = url

    def run(self, fn):
        """Run fn(session_factory) on a fresh engine and return its result."""
        async def _run():
            engine = db.create_engine(self.url)
            try:
                await db.init_schema(engine)
                return await fn(db.create_session_factory(engine))
            finally:
                await engine.dispose()

        return asyncio.run(_run())

    def execute(self, sql, params=None):
        async def _execute(factory):
            async with factory() as session:
                await session.execute(text(sql), params or {})
                await session.commit()

        self.run(_execute)

    def fetch_all(self, sql, params=None):
        async def _fetch(factory):
            async with factory() as session:
                result = await session.execute(text(sql), params or {})
                return [dict(row._mapping) for row in result.fetchall()]

        return self.run(_fetch)

    def fetch_one(self, sql, params=None):
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    # ── seed ─────────────────────────────────────

    def seed_catalog(self):
        for product in PRODUCTS:
            self.execute(
                """
                INSERT INTO products
                    (id, name, price, promo_price, is_promo, active,
                     weight, width, height, length, sold_count)
                VALUES
                    (:id, :name, :price, :promo_price, :is_promo, :active,
                     :weight, :width, :height, :length, 0)
                """,
                product,
            )
        for product_id, size, stock in VARIANTS:
            self.execute(
                """
                INSERT INTO product_variants (id, product_id, size, stock)
                VALUES (:id, :product_id, :size, :stock)
                """,
                {"id": str(uuid4()), "product_id": product_id, "size": size, "stock": stock},
            )

    def insert_order(
        self,
        user_id="user-ana",
        items=(("p-camiseta", "M", 1, 59.90),),
        shipping_cost=30.00,
        status="criado",
        payment_id=None,
        payment_method=None,
    ):
        """Insert an order directly, bypassing checkout. items: (product_id, size, qty, unit_price)."""
        order_id = str(uuid4())
        now = datetime.now(timezone.utc)
        subtotal = round(sum(qty * price for _, _, qty, price in items), 2)
        self.execute(
            """
            INSERT INTO orders
                (id, user_id, status, subtotal, shipping_cost, total, shipping_service,
                 shipping_deadline, payment_method, payment_id, address_snapshot,
                 created_at, updated_at)
            VALUES
                (:id, :user_id, :status, :subtotal, :shipping_cost, :total, 'PAC',
                 '10 dias úteis', :payment_method, :payment_id, :address, :now, :now)
            """,
            {
                "id": order_id,
                "user_id": user_id,
                "status": status,
                "subtotal": subtotal,
                "shipping_cost": shipping_cost,
                "total": round(subtotal + shipping_cost, 2),
                "payment_method": payment_method,
                "payment_id": payment_id,
                "address": json.dumps({"cep": "30130000", "city": "Belo Horizonte", "state": "MG"}),
                "now": now,
            },
        )
        for product_id, size, qty, price in items:
            name = next(p["name"] for p in PRODUCTS if p["id"] == product_id)
            self.execute(
                """
                INSERT INTO order_items
                    (id, order_id, product_id, product_name, size, quantity, unit_price, created_at)
                VALUES
                    (:id, :order_id, :product_id, :name, :size, :qty, :price, :now)
                """,
                {
                    "id": str(uuid4()), "order_id": order_id, "product_id": product_id,
                    "name": name, "size": size, "qty": qty, "price": price, "now": now,
                },
            )
        return order_id

    # ── inspect ──────────────────────────────────

    def order(self, order_id):
        return self.fetch_one("SELECT * FROM orders WHERE id = :id", {"id": order_id})

    def order_count(self):
        return self.fetch_one("SELECT COUNT(*) AS n FROM orders")["n"]

    def stock(self, product_id, size):
        row = self.fetch_one(
            "SELECT stock FROM product_variants WHERE product_id = :p AND size = :s",
            {"p": product_id, "s": size},
        )
        return row["stock"]

    def sold_count(self, product_id):
        row = self.fetch_one("SELECT sold_count FROM products WHERE id = :id", {"id": product_id})
        return row["sold_count"]

    def audit(self, action=None, entity_id=None):
        rows = self.fetch_all("SELECT * FROM audit_log ORDER BY created_at ASC")
        return [
            {**row, "details": db.load_json(row["details"])}
            for row in rows
            if (action is None or row["action"] == action)
            and (entity_id is None or row["entity_id"] == entity_id)
        ]


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary SQLite database and the fake providers."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}",
        mercadopago_access_token="TEST-TOKEN",
        mercadopago_api_url=MP_URL,
        public_base_url="https://api.loja.test",
        storefront_url="https://loja.test",
        auth_url=AUTH_URL,
        auth_api_key="anon-key",
        create_schema=True,
        log_level="WARNING",
    )


@pytest.fixture
def database(settings):
    """Schema + seeded catalog."""
    database = Database(settings.database_url)
    database.seed_catalog()
    return database


@pytest.fixture
def provider():
    return FakeMercadoPago()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def client(settings, database, provider, fake_redis):
    """TestClient with the lifespan running against the fakes."""
    from storefront.main import create_app

    app = create_app(settings, transport=httpx.MockTransport(provider), redis=fake_redis)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer token-ana"}


@pytest.fixture
def other_auth_headers():
    return {"Authorization": "Bearer token-bruno"}
