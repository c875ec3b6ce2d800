"""
Notification feed.

Notifications are written as a side effect of task changes and pushed to the
target user's live room. Both steps are best effort: a failure is logged and the
caller's operation carries on.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, oid, serialize, utcnow
from errors import NotFoundError
from realtime import LiveChannel
from schemas import Notification

logger = logging.getLogger(__name__)

FEED_SIZE = 50


async def notify(
    db: Database,
    channel: Optional[LiveChannel],
    user_id: Any,
    actor_id: Any,
    type_: str,
    title: str,
    body: Optional[str] = None,
    link: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Record a notification for ``user_id`` and push it to their room."""
    try:
        data = Notification(
            user_id=str(user_id),
            actor_id=str(actor_id) if actor_id else None,
            type=type_,
            title=title,
            body=body,
            link=link,
        ).model_dump()
        data["user_id"] = oid(data["user_id"])
        if data["actor_id"]:
            data["actor_id"] = oid(data["actor_id"])
        inserted = create_document(db, "notification", data)
        note = serialize(db["notification"].find_one({"_id": inserted}))
    except Exception:
        logger.exception("Failed to record %s notification for user %s", type_, user_id)
        return None

    await broadcast_to_user(channel, user_id, "notification", note)
    return note


async def broadcast_to_user(channel: Optional[LiveChannel], user_id: Any, event: str, data: Any):
    if channel is None:
        return
    try:
        await channel.emit_to_user(str(user_id), event, data)
    except Exception:
        logger.exception("Failed to push %s to user %s", event, user_id)


async def broadcast_to_project(channel: Optional[LiveChannel], project_id: Any, event: str, data: Any):
    if channel is None:
        return
    try:
        await channel.emit_to_project(str(project_id), event, data)
    except Exception:
        logger.exception("Failed to broadcast %s to project %s", event, project_id)


def list_notifications(db: Database, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    cursor = (
        db["notification"]
        .find({"user_id": user["_id"]})
        .sort("created_at", -1)
        .limit(FEED_SIZE)
    )
    return [serialize(n) for n in cursor]


def mark_read(db: Database, user: Dict[str, Any], notification_id: str) -> Dict[str, Any]:
    # Scoped to the owner; marking an already-read notification is a no-op.
    note = db["notification"].find_one_and_update(
        {"_id": oid(notification_id, "notification id"), "user_id": user["_id"]},
        {"$set": {"read": True, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not note:
        raise NotFoundError("Notification not found")
    return serialize(note)
