"""Remote response data access helpers.

Encapsulates the idempotent upsert and the read queries of the sync endpoint
to keep route handlers free of inline SQL. Rows are keyed by the
client-generated `response_id`; resubmitting an id replaces the stored payload
(latest write wins) and bumps `revision`, never inserting a second row.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import text as sql_text
from sqlalchemy.engine import Connection, Engine

from nomadsync.models.wire import ResponseIn

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _loads(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(value or "{}")
    except (TypeError, ValueError):
        logger.error("stored_json_unreadable value=%r", value)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def upsert_response(conn: Connection, item: ResponseIn) -> Dict[str, Any]:
    """Insert or update one response inside the caller's transaction.

    Returns `{"response_id", "created", "revision"}`.
    """
    now = _now()
    existing = conn.execute(
        sql_text("SELECT revision FROM responses WHERE response_id = :rid"),
        {"rid": item.response_id},
    ).fetchone()
    params = {
        "rid": item.response_id,
        "survey_id": item.survey_id,
        "session_id": item.session_id,
        "data": _dumps(item.payload),
        "submitted_at": item.submitted_at or now,
        "device_info": _dumps(item.device_info),
        "is_offline": bool(item.is_offline),
        "now": now,
    }
    if existing is None:
        conn.execute(
            sql_text(
                """
                INSERT INTO responses (
                    response_id, survey_id, session_id, response_data, submitted_at,
                    device_info, is_offline, received_at, synced_at, revision
                ) VALUES (
                    :rid, :survey_id, :session_id, :data, :submitted_at,
                    :device_info, :is_offline, :now, :now, 1
                )
                """
            ),
            params,
        )
        revision = 1
        action = "create"
    else:
        revision = int(existing[0] or 0) + 1
        conn.execute(
            sql_text(
                """
                UPDATE responses
                   SET survey_id = :survey_id,
                       session_id = :session_id,
                       response_data = :data,
                       submitted_at = :submitted_at,
                       device_info = :device_info,
                       is_offline = :is_offline,
                       synced_at = :now,
                       revision = :revision
                 WHERE response_id = :rid
                """
            ),
            {**params, "revision": revision},
        )
        action = "update"
    conn.execute(
        sql_text(
            """
            INSERT INTO sync_audit (audit_id, response_id, action, device_id, recorded_at)
            VALUES (:aid, :rid, :action, :device_id, :now)
            """
        ),
        {
            "aid": str(uuid.uuid4()),
            "rid": item.response_id,
            "action": action,
            "device_id": (item.device_info or {}).get("device_id"),
            "now": now,
        },
    )
    logger.info("response_upserted response_id=%s action=%s revision=%d", item.response_id, action, revision)
    return {"response_id": item.response_id, "created": existing is None, "revision": revision}


def _row_to_dict(row: Any) -> Dict[str, Any]:
    m = row._mapping
    return {
        "response_id": m["response_id"],
        "survey_id": m["survey_id"],
        "session_id": m["session_id"],
        "payload": _loads(m["response_data"]),
        "submitted_at": m["submitted_at"],
        "device_info": _loads(m["device_info"]),
        "is_offline": bool(m["is_offline"]),
        "synced_at": m["synced_at"],
        "revision": int(m["revision"]),
    }


_SELECT_COLUMNS = (
    "response_id, survey_id, session_id, response_data, submitted_at, "
    "device_info, is_offline, synced_at, revision"
)


def get_response(engine: Engine, response_id: str) -> Dict[str, Any] | None:
    with engine.connect() as conn:
        row = conn.execute(
            sql_text(f"SELECT {_SELECT_COLUMNS} FROM responses WHERE response_id = :rid"),
            {"rid": response_id},
        ).fetchone()
    return _row_to_dict(row) if row is not None else None


def count_responses(engine: Engine, response_id: str) -> int:
    with engine.connect() as conn:
        return int(
            conn.execute(
                sql_text("SELECT COUNT(*) FROM responses WHERE response_id = :rid"),
                {"rid": response_id},
            ).scalar_one()
        )


def list_survey_responses(engine: Engine, survey_id: str) -> List[Dict[str, Any]]:
    with engine.connect() as conn:
        rows = conn.execute(
            sql_text(
                f"SELECT {_SELECT_COLUMNS} FROM responses WHERE survey_id = :sid "
                "ORDER BY submitted_at DESC, response_id"
            ),
            {"sid": survey_id},
        ).fetchall()
    return [_row_to_dict(r) for r in rows]


def survey_analytics(engine: Engine, survey_id: str) -> Dict[str, Any]:
    with engine.connect() as conn:
        total = int(
            conn.execute(
                sql_text("SELECT COUNT(*) FROM responses WHERE survey_id = :sid"), {"sid": survey_id}
            ).scalar_one()
        )
        offline = int(
            conn.execute(
                sql_text("SELECT COUNT(*) FROM responses WHERE survey_id = :sid AND is_offline = :t"),
                {"sid": survey_id, "t": True},
            ).scalar_one()
        )
        by_day = conn.execute(
            sql_text(
                """
                SELECT SUBSTR(submitted_at, 1, 10) AS day, COUNT(*) AS n
                  FROM responses
                 WHERE survey_id = :sid
                 GROUP BY SUBSTR(submitted_at, 1, 10)
                 ORDER BY day DESC
                 LIMIT 30
                """
            ),
            {"sid": survey_id},
        ).fetchall()
    return {
        "total_responses": total,
        "offline_responses": offline,
        "online_responses": total - offline,
        "responses_by_day": [{"date": str(r[0]), "count": int(r[1])} for r in by_day],
    }


__all__ = [
    "upsert_response",
    "get_response",
    "count_responses",
    "list_survey_responses",
    "survey_analytics",
]
