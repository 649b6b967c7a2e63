"""Trail of admin actions stored alongside the shop data."""

import logging
import math
import re
from datetime import datetime
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(metadata, dict):
        return {}
    sanitized: Dict[str, str] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        sanitized[str(key)] = str(value)
    return sanitized


def ensure_indexes(db) -> None:
    db.audit_logs.create_index([("created_at", -1)])
    db.audit_logs.create_index([("user_email", 1), ("action", 1)])


def record_audit_log(db, actor_email: Optional[str], action: str, metadata: Optional[Dict] = None):
    if not action:
        return
    try:
        db.audit_logs.insert_one(
            {
                "user_email": str(actor_email or "").strip().lower() or None,
                "action": action,
                "metadata": sanitize_metadata(metadata),
                "created_at": datetime.utcnow(),
            }
        )
    except Exception as exc:
        logger.warning("Unable to record audit log: %s", exc)


def serialize_audit_log(document):
    if not document:
        return {}
    created_at = document.get("created_at")
    metadata = document.get("metadata")
    return {
        "id": str(document.get("_id")),
        "user_email": document.get("user_email") or "",
        "action": document.get("action") or "",
        "metadata": metadata if isinstance(metadata, dict) else {},
        "created_at": created_at.isoformat() + "Z"
        if isinstance(created_at, datetime)
        else None,
    }


def list_audit_logs(db, search: Optional[str] = None, page: int = 1, limit: int = 50):
    query: Dict[str, object] = {}
    search_term = str(search or "").strip()
    if search_term:
        regex = re.compile(re.escape(search_term), re.IGNORECASE)
        query["$or"] = [{"user_email": regex}, {"action": regex}]

    skip = (page - 1) * limit
    cursor = db.audit_logs.find(query).sort("created_at", -1).skip(skip).limit(limit)
    logs = [serialize_audit_log(document) for document in cursor]
    total = db.audit_logs.count_documents(query)
    return {
        "logs": logs,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }
