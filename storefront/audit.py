"""
監査ログ (Audit Log)

Webhook の受信とすべての注文ステータス遷移を追記専用で記録する。
冪等性の調査や決済事業者との照合に使う。更新・削除はしない。

append_entry はコミットしない。呼び出し側のトランザクションに
含めることで、状態変更と監査記録が同時に確定する。
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import dump_json, iso, load_json

# Webhook など、システムが起点の操作に使う actor id
SYSTEM_ACTOR_ID = "00000000-0000-0000-0000-000000000000"


async def append_entry(
    session: AsyncSession,
    actor_id: str,
    action: str,
    entity: str,
    entity_id: str | None,
    details: dict | None = None,
) -> str:
    entry_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO audit_log
                (id, actor_id, action, entity, entity_id, details, created_at)
            VALUES
                (:id, :actor_id, :action, :entity, :entity_id, :details, :now)
        """),
        {
            "id": entry_id,
            "actor_id": actor_id,
            "action": action,
            "entity": entity,
            "entity_id": entity_id,
            "details": dump_json(details),
            "now": datetime.now(timezone.utc),
        },
    )
    return entry_id


async def list_entries(
    session: AsyncSession,
    entity: str | None = None,
    entity_id: str | None = None,
) -> list[dict]:
    """監査ログを時系列順に返す。entity / entity_id で絞り込める。"""
    clauses = []
    params: dict = {}
    if entity is not None:
        clauses.append("entity = :entity")
        params["entity"] = entity
    if entity_id is not None:
        clauses.append("entity_id = :entity_id")
        params["entity_id"] = entity_id
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    result = await session.execute(
        text(f"""
            SELECT id, actor_id, action, entity, entity_id, details, created_at
            FROM audit_log
            {where}
            ORDER BY created_at ASC
        """),
        params,
    )
    return [
        {
            "id": row.id,
            "actor_id": row.actor_id,
            "action": row.action,
            "entity": row.entity,
            "entity_id": row.entity_id,
            "details": load_json(row.details),
            "created_at": iso(row.created_at),
        }
        for row in result.fetchall()
    ]
