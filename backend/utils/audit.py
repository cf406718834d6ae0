import logging
from datetime import datetime

from config.constants import ROLE_SYSTEM

logger = logging.getLogger(__name__)


def actor_ref(actor: dict | None) -> tuple[str, str]:
    if not actor:
        return "system", ROLE_SYSTEM
    return str(actor.get("_id")), actor.get("role") or ROLE_SYSTEM


async def log_audit(
    db,
    *,
    actor: dict | None,
    action: str,
    target_type: str,
    target_id,
    metadata: dict | None = None,
):
    """Admin/seller money actions. Observer only: failures are logged."""
    actor_id, actor_role = actor_ref(actor)
    try:
        await db.audit_logs.insert_one({
            "actor_id": actor_id,
            "actor_role": actor_role,
            "action": action,
            "target_type": target_type,
            "target_id": str(target_id),
            "metadata": metadata or {},
            "created_at": datetime.utcnow(),
        })
    except Exception:
        logger.exception("AUDIT_ERROR action=%s target=%s", action, target_id)
