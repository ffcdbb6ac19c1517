"""
データベース — エンジン・セッション・スキーマ

本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite) を使う。
SQL は両方で動く書き方に揃えている (JSON は TEXT に格納、ID はアプリ側で採番)。
"""

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id          VARCHAR(36) PRIMARY KEY,
        name        VARCHAR(255) NOT NULL,
        price       NUMERIC(10, 2) NOT NULL,
        promo_price NUMERIC(10, 2),
        is_promo    BOOLEAN NOT NULL DEFAULT FALSE,
        active      BOOLEAN NOT NULL DEFAULT TRUE,
        weight      NUMERIC(8, 3),
        width       NUMERIC(8, 2),
        height      NUMERIC(8, 2),
        length      NUMERIC(8, 2),
        sold_count  INTEGER NOT NULL DEFAULT 0,
        updated_at  TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_variants (
        id          VARCHAR(36) PRIMARY KEY,
        product_id  VARCHAR(36) NOT NULL REFERENCES products (id),
        size        VARCHAR(16) NOT NULL,
        stock       INTEGER NOT NULL DEFAULT 0 CHECK (stock >= 0),
        updated_at  TIMESTAMP WITH TIME ZONE,
        UNIQUE (product_id, size)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                VARCHAR(36) PRIMARY KEY,
        user_id           VARCHAR(64) NOT NULL,
        status            VARCHAR(32) NOT NULL DEFAULT 'criado' CHECK (status IN (
                              'criado', 'aguardando_pagamento', 'pago', 'separando',
                              'enviado', 'entregue', 'cancelado')),
        subtotal          NUMERIC(10, 2) NOT NULL,
        shipping_cost     NUMERIC(10, 2) NOT NULL DEFAULT 0,
        total             NUMERIC(10, 2) NOT NULL,
        shipping_service  VARCHAR(32),
        shipping_deadline VARCHAR(64),
        payment_method    VARCHAR(32),
        payment_id        VARCHAR(64),
        address_snapshot  TEXT,
        tracking_code     VARCHAR(64),
        created_at        TIMESTAMP WITH TIME ZONE NOT NULL,
        updated_at        TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id            VARCHAR(36) PRIMARY KEY,
        order_id      VARCHAR(36) NOT NULL REFERENCES orders (id),
        product_id    VARCHAR(36) NOT NULL,
        product_name  VARCHAR(255) NOT NULL,
        size          VARCHAR(16) NOT NULL,
        quantity      INTEGER NOT NULL CHECK (quantity > 0),
        unit_price    NUMERIC(10, 2) NOT NULL,
        created_at    TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id          VARCHAR(36) PRIMARY KEY,
        actor_id    VARCHAR(64) NOT NULL,
        action      VARCHAR(64) NOT NULL,
        entity      VARCHAR(32) NOT NULL,
        entity_id   VARCHAR(64),
        details     TEXT,
        created_at  TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items (order_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_log_entity ON audit_log (entity, entity_id)",
]


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する (開発・テスト用)。"""
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


# ── 行の変換ヘルパー ─────────────────────────────
# PostgreSQL は datetime / dict を、SQLite は文字列を返す。


def iso(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def load_json(value):
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


def dump_json(value) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)
