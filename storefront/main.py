"""
Storefront Payments — FastAPI エントリーポイント

注文の決済照合サブシステムを HTTP API として公開する。

  ┌──────────┐     ┌────────────────────┐     ┌──────────────┐
  │ Frontend │────▶│ /shipping          │     │              │
  │          │────▶│ /checkout          │────▶│ Mercado Pago │
  │          │────▶│ /payments          │────▶│              │
  └──────────┘     │                    │     └──────┬───────┘
                   │ /webhooks ◀────────┼────────────┘ (非同期通知)
                   └────────────────────┘
"""

import logging
from contextlib import asynccontextmanager
from uuid import UUID

import httpx
import redis.asyncio as aioredis
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from . import audit, db
from .auth import CurrentUser, get_current_user
from .checkout.orchestrator import (
    Cart,
    CartItem,
    CheckoutOrchestrator,
    CheckoutSession,
    DeliveryAddress,
)
from .config import Settings, load_settings
from .errors import OrderNotFoundError, StorefrontError, error_body, status_code_for
from .order import queries as order_queries
from .payment import commands as payment_commands
from .payment.gateway import MercadoPagoClient
from .publisher import EventPublisher
from .shipping import queries as shipping_queries
from .webhook.reconciler import Notification, WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ───────────────────────────────


class ShippingItem(BaseModel):
    product_id: str
    quantity: int = 1


class ShippingRequest(BaseModel):
    # cep_destino / city / state: ストアフロント旧版の項目名
    destination_postal_code: str | None = Field(
        None, validation_alias=AliasChoices("destination_postal_code", "cep_destino")
    )
    items: list[ShippingItem] = []
    destination_city: str | None = Field(
        None, validation_alias=AliasChoices("destination_city", "city")
    )
    destination_state: str | None = Field(
        None, validation_alias=AliasChoices("destination_state", "state")
    )
    subtotal: float | None = None


class CreatePaymentRequest(BaseModel):
    order_id: str | None = None
    payment_method: str | None = None


class PlaceOrderRequest(BaseModel):
    address: DeliveryAddress
    shipping_service: str
    payment_method: str
    items: list[CartItem]


# ── 送料見積もり ─────────────────────────────────


@router.post("/shipping/calculate")
async def calculate_shipping(req: ShippingRequest, request: Request):
    """送料見積もり (認証不要)"""
    state = request.app.state
    async with state.session_factory() as session:
        quote = await shipping_queries.quote_shipping(
            session,
            state.settings,
            req.destination_postal_code,
            [(item.product_id, item.quantity) for item in req.items],
            req.destination_city,
            req.destination_state,
            req.subtotal,
        )
    return quote.model_dump()


# ── チェックアウト ───────────────────────────────


@router.post("/checkout/orders")
async def place_order(
    req: PlaceOrderRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
):
    """
    注文確定 — 住所 → 配送方法 → 支払い方法 の順に選択してから確定する。
    決済作成に失敗した場合は注文 ID 付きでエラーを返す。
    """
    orchestrator: CheckoutOrchestrator = request.app.state.checkout
    checkout = CheckoutSession(user, Cart(req.items))
    checkout.select_address(req.address)
    await orchestrator.quote(checkout)
    checkout.select_shipping(req.shipping_service)
    checkout.select_payment_method(req.payment_method)

    result = await orchestrator.place_order(checkout)
    if not result["success"]:
        status_code = result.pop("status_code")
        return JSONResponse(status_code=status_code, content=result)
    return result


# ── 決済作成 ─────────────────────────────────────


@router.post("/payments")
async def create_payment(
    req: CreatePaymentRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
):
    """既存の注文に対して Pix / カード決済を作成する (再試行にも使う)。"""
    if not req.order_id or not req.payment_method:
        return JSONResponse(
            status_code=400,
            content={"error": "order_id and payment_method are required"},
        )
    state = request.app.state
    async with state.session_factory() as session:
        return await payment_commands.create_payment(
            session,
            state.gateway,
            state.publisher,
            order_id=req.order_id,
            user=user,
            payment_method=req.payment_method,
            notification_url=state.settings.notification_url,
            back_url=state.settings.back_url,
        )


# ── Webhook (認証なし: 事業者への再照会で信頼を確立する) ──


@router.post("/webhooks/mercadopago")
async def mercadopago_webhook(request: Request):
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})
    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid notification"})

    notification = Notification.from_request(body, request.query_params)
    reconciler: WebhookReconciler = request.app.state.reconciler
    status_code, content = await reconciler.handle(notification)
    return JSONResponse(status_code=status_code, content=content)


# ── Query Endpoints (読み取り側) ─────────────────


@router.get("/queries/orders")
async def query_list_orders(request: Request, user: CurrentUser = Depends(get_current_user)):
    """利用者の注文一覧"""
    async with request.app.state.session_factory() as session:
        return await order_queries.list_orders(session, user.id)


@router.get("/queries/orders/{order_id}")
async def query_get_order(
    order_id: UUID,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
):
    """利用者の注文 (明細付き)"""
    async with request.app.state.session_factory() as session:
        order = await order_queries.get_order(session, str(order_id), user.id)
        if not order:
            raise OrderNotFoundError(str(order_id))
        return order


@router.get("/queries/orders/{order_id}/history")
async def query_order_history(
    order_id: UUID,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
):
    """利用者の注文の監査ログ (作成 → 決済作成 → ステータス遷移)"""
    async with request.app.state.session_factory() as session:
        agg = await order_queries.load_order(session, str(order_id), user.id)
        if agg is None:
            raise OrderNotFoundError(str(order_id))
        entries = await audit.list_entries(session, entity="order", entity_id=agg.id)
    return [
        {"action": e["action"], "details": e["details"], "created_at": e["created_at"]}
        for e in entries
    ]


@router.get("/health")
async def health():
    return {"status": "ok", "service": "storefront-payments"}


# ── 例外ハンドラ ─────────────────────────────────


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """StorefrontError のサブクラスを対応する HTTP ステータスに変換する。"""
    return JSONResponse(status_code=status_code_for(exc), content=error_body(exc))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


# ── アプリケーション ─────────────────────────────


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    """
    アプリを組み立てる。

    transport / redis はテストで外部サービスを差し替えるために使う。
    """
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = db.create_engine(settings.database_url)
        if settings.create_schema:
            await db.init_schema(engine)
        session_factory = db.create_session_factory(engine)

        redis_pool = redis
        if redis_pool is None and settings.redis_url:
            redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
        http_client = httpx.AsyncClient(timeout=30.0, transport=transport)

        gateway = MercadoPagoClient(
            http_client,
            settings.mercadopago_access_token,
            settings.mercadopago_api_url,
        )
        publisher = EventPublisher(redis_pool)

        app.state.settings = settings
        app.state.session_factory = session_factory
        app.state.http_client = http_client
        app.state.gateway = gateway
        app.state.publisher = publisher
        app.state.reconciler = WebhookReconciler(session_factory, gateway, publisher)
        app.state.checkout = CheckoutOrchestrator(session_factory, gateway, publisher, settings)
        logger.info("Storefront payments started (redis=%s)", "on" if redis_pool is not None else "off")
        yield
        await http_client.aclose()
        if redis is None and redis_pool is not None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Storefront Payments", lifespan=lifespan)

    # CORS 設定 (ストアフロントからのアクセスを許可)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    """`storefront-payments` コマンド (HOST / PORT で待ち受け先を変える)"""
    settings = load_settings()
    uvicorn.run(
        "storefront.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
