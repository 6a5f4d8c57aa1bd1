import json
from typing import Any, Dict, Optional

from sqlalchemy import insert
from sqlalchemy.orm import Session

from mywallet.core.database import audit_log
from mywallet.core.logging import get_request_id


def _safe_truncate(value: Any, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def record_audit(
    db: Session,
    *,
    action: str,
    resource: str,
    user_id: Optional[str],
    resource_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """Write an audit row in the caller's transaction.

    The row commits or rolls back with the change it describes.
    """
    body = {k: _safe_truncate(v) for k, v in (payload or {}).items()}
    body["request_id"] = get_request_id()
    db.execute(
        insert(audit_log).values(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            payload_json=json.dumps(body, default=str),
        )
    )
