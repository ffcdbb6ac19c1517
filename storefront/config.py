"""
設定 — 環境変数から読み込む

各サービスは設定を環境変数で受け取る。
Settings はアプリ起動時に一度だけ作られ、app.state に保持される。
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./storefront.db"
    redis_url: str | None = None
    mercadopago_access_token: str | None = None
    mercadopago_api_url: str = "https://api.mercadopago.com"
    # Webhook のコールバック URL を組み立てるための公開ベース URL
    public_base_url: str = "http://localhost:8000"
    # カード決済後の戻り先 (ストアフロント)
    storefront_url: str = "https://loja.com"
    auth_url: str | None = None
    auth_api_key: str | None = None
    free_shipping_threshold: float = 130.0
    free_shipping_city: str = "Para de Minas"
    free_shipping_state: str = "MG"
    create_schema: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    @property
    def notification_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/webhooks/mercadopago"

    @property
    def back_url(self) -> str:
        return f"{self.storefront_url.rstrip('/')}/conta"


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    env = os.environ
    return Settings(
        database_url=env.get("DATABASE_URL", Settings.database_url),
        redis_url=env.get("REDIS_URL") or None,
        mercadopago_access_token=env.get("MERCADOPAGO_ACCESS_TOKEN") or None,
        mercadopago_api_url=env.get("MERCADOPAGO_API_URL", Settings.mercadopago_api_url),
        public_base_url=env.get("PUBLIC_BASE_URL", Settings.public_base_url),
        storefront_url=env.get("STOREFRONT_URL", Settings.storefront_url),
        auth_url=env.get("AUTH_URL") or None,
        auth_api_key=env.get("AUTH_API_KEY") or None,
        free_shipping_threshold=float(
            env.get("FREE_SHIPPING_THRESHOLD", Settings.free_shipping_threshold)
        ),
        free_shipping_city=env.get("FREE_SHIPPING_CITY", Settings.free_shipping_city),
        free_shipping_state=env.get("FREE_SHIPPING_STATE", Settings.free_shipping_state),
        create_schema=_flag(env.get("CREATE_SCHEMA", "false")),
        log_level=env.get("LOG_LEVEL", Settings.log_level),
        host=env.get("HOST", Settings.host),
        port=int(env.get("PORT", Settings.port)),
    )
