"""
認証 — 外部 ID プロバイダでベアラートークンを検証する

セッション管理は ID プロバイダに委譲している。
ここではトークンをプロバイダの /auth/v1/user に渡し、
返ってきたユーザー情報 (id / email / name) だけを使う。
"""

from dataclasses import dataclass

import httpx
from fastapi import Request

from .config import Settings
from .errors import ProviderUnavailableError, UnauthorizedError


@dataclass(frozen=True)
class CurrentUser:
    id: str
    email: str | None = None
    name: str | None = None


async def fetch_user(
    client: httpx.AsyncClient,
    settings: Settings,
    token: str,
) -> CurrentUser:
    if not settings.auth_url:
        raise ProviderUnavailableError("Identity provider not configured")

    try:
        resp = await client.get(
            f"{settings.auth_url.rstrip('/')}/auth/v1/user",
            headers={
                "Authorization": f"Bearer {token}",
                "apikey": settings.auth_api_key or "",
            },
        )
    except httpx.HTTPError as e:
        raise ProviderUnavailableError(f"Identity provider unreachable: {e}") from e

    if resp.status_code in (401, 403):
        raise UnauthorizedError()
    if resp.status_code >= 400:
        raise ProviderUnavailableError(
            f"Identity provider error: HTTP {resp.status_code}"
        )

    data = resp.json()
    if not data.get("id"):
        raise UnauthorizedError()
    metadata = data.get("user_metadata") or {}
    return CurrentUser(
        id=str(data["id"]),
        email=data.get("email"),
        name=metadata.get("name"),
    )


async def get_current_user(request: Request) -> CurrentUser:
    """FastAPI の依存関数: Authorization ヘッダーから利用者を解決する。"""
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise UnauthorizedError()
    token = header.removeprefix("Bearer ").strip()
    if not token:
        raise UnauthorizedError()
    state = request.app.state
    return await fetch_user(state.http_client, state.settings, token)
