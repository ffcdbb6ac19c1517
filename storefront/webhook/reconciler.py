"""
Webhook — 決済ステータスの照合 (Reconciler)

決済事業者から非同期に呼ばれ、支払い状態を注文に一度だけ反映する。

  ┌──────────────────────────────────────────────────────────┐
  │  1. 受信した通知を監査ログに記録 (以降が失敗しても残る)      │
  │  2. payment の作成・更新以外は無視                          │
  │  3. 通知から決済 ID を取り出す (無ければ何もしない)          │
  │  4. 決済の正本を事業者から再取得 (通知本文は信用しない)      │
  │  5. external_reference で注文を特定 (無ければ 404)           │
  │  6. 支払い済みなら何もしない (在庫の二重引き落とし防止)      │
  │  7. ステータスを変換して注文に反映                          │
  │  8. 遷移を監査ログに記録                                    │
  │  9. 初めて pago になったときだけ在庫・販売数を更新          │
  └──────────────────────────────────────────────────────────┘

例外は外に投げない。必ず (HTTP ステータス, 本文) を返し、
5xx なら事業者が後で再送する。
"""

import logging
from collections.abc import Mapping

from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from .. import audit
from ..errors import (
    OrderNotFoundError,
    PaymentNotFoundError,
    PaymentRejectedError,
    error_body,
    status_code_for,
)
from ..order import commands as order_commands
from ..order import queries as order_queries
from ..order.aggregate import Decision, map_provider_status
from ..payment.gateway import MercadoPagoClient
from ..publisher import EventPublisher

logger = logging.getLogger(__name__)

PAYMENT_ACTIONS = ("payment.created", "payment.updated")


class Notification(BaseModel):
    """Mercado Pago の通知エンベロープ {type, action, data: {id}}"""
    type: str | None = None
    action: str | None = None
    payment_id: str | None = None

    @classmethod
    def from_request(
        cls,
        body: Mapping | None,
        query: Mapping | None = None,
    ) -> "Notification":
        """本文を優先し、無い項目はクエリ文字列 (type, data.id) から補う。"""
        body = body or {}
        query = query or {}
        data = body.get("data") if isinstance(body.get("data"), Mapping) else {}
        data_id = data.get("id") or query.get("data.id")
        return cls(
            type=body.get("type") or query.get("type"),
            action=body.get("action"),
            payment_id=str(data_id) if data_id else None,
        )

    @property
    def is_payment_event(self) -> bool:
        return self.type == "payment" or self.action in PAYMENT_ACTIONS


class WebhookReconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: MercadoPagoClient,
        publisher: EventPublisher,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.publisher = publisher

    async def handle(self, notification: Notification) -> tuple[int, dict]:
        """通知を 1 件処理し、(HTTP ステータス, レスポンス本文) を返す。"""
        logger.info(
            "Webhook received: type=%s action=%s data_id=%s",
            notification.type, notification.action, notification.payment_id,
        )
        try:
            await self._record(
                "mp_notification", "webhook", notification.payment_id or "",
                notification.model_dump(),
            )
            return await self._process(notification)
        except (OrderNotFoundError, PaymentRejectedError) as e:
            return status_code_for(e), error_body(e)
        except Exception as e:
            logger.exception("Webhook processing failed")
            await self._record_error(e, notification)
            return 500, {"error": str(e)}

    async def _process(self, notification: Notification) -> tuple[int, dict]:
        if not notification.is_payment_event:
            return 200, {"ok": True, "msg": "ignored"}

        payment_id = notification.payment_id
        if not payment_id:
            return 200, {"ok": True}

        try:
            payment = await self.gateway.get_payment(payment_id)
        except PaymentNotFoundError:
            logger.info("Payment %s unknown to provider, ignoring", payment_id)
            return 200, {"ok": True, "msg": "unknown payment"}
        except PaymentRejectedError as e:
            await self._record("mp_fetch_error", "webhook", payment_id, {"error": e.details})
            raise PaymentRejectedError("Failed to fetch payment", details=e.details) from e

        order_id = payment.external_reference
        if not order_id:
            logger.info("No external_reference in payment %s", payment_id)
            return 200, {"ok": True}

        target = map_provider_status(payment.status)

        async with self.session_factory() as session:
            agg = await order_queries.load_order(session, order_id)
            if agg is None:
                logger.error("Order not found: %s", order_id)
                raise OrderNotFoundError(order_id)

            decision = agg.decide(target)

            if decision is Decision.ALREADY_PAID:
                logger.info("Order %s already paid, skipping", order_id)
                return 200, {"ok": True, "status": decision.value}

            if decision is Decision.MANUAL_REVIEW:
                logger.warning(
                    "Payment %s approved for cancelled order %s, needs manual review",
                    payment_id, order_id,
                )
                await audit.append_entry(
                    session, audit.SYSTEM_ACTOR_ID, "payment_requires_review", "order", order_id,
                    {"mp_status": payment.status, "payment_id": payment_id},
                )
                await session.commit()
                return 200, {"ok": True, "status": decision.value}

            if decision is Decision.ALREADY_CANCELLED:
                logger.info("Order %s already cancelled, ignoring %s", order_id, payment.status)
                return 200, {"ok": True, "status": decision.value}

            applied = await order_commands.apply_payment_status(
                session,
                self.publisher,
                agg,
                target,
                payment.id,
                payment.payment_method_id or "unknown",
                payment.status,
            )

        if not applied:
            return 200, {"ok": True, "status": "already_processed"}
        logger.info("Order %s -> %s (mp status %s)", order_id, target.value, payment.status)
        return 200, {"ok": True, "status": target.value}

    # ── 監査ログ ─────────────────────────────────

    async def _record(self, action: str, entity: str, entity_id: str, details: dict) -> None:
        async with self.session_factory() as session:
            await audit.append_entry(
                session, audit.SYSTEM_ACTOR_ID, action, entity, entity_id, details
            )
            await session.commit()

    async def _record_error(self, exc: Exception, notification: Notification) -> None:
        try:
            await self._record(
                "webhook_error", "webhook", notification.payment_id or "",
                {"error": str(exc), "type": type(exc).__name__},
            )
        except Exception:
            logger.exception("Failed to record webhook error")
