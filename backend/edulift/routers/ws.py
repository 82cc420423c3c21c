"""Membership events WebSocket router.

Clients receive ``memberJoined``, ``memberLeft``, ``memberRoleUpdated``
and ``familyJoined`` events for their family and its groups.
"""

import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from edulift.core.dependencies import user_id_from_token
from edulift.database import get_db
from edulift.models.group import Group, GroupFamilyMember
from edulift.services import access
from edulift.services.connection_manager import connection_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Membership WebSocket"])


async def _group_ids_for_family(db: AsyncSession, family_id: uuid.UUID) -> list[uuid.UUID]:
    owned = await db.execute(select(Group.id).where(Group.family_id == family_id))
    joined = await db.execute(
        select(GroupFamilyMember.group_id).where(GroupFamilyMember.family_id == family_id)
    )
    return list(set(owned.scalars().all()) | set(joined.scalars().all()))


@router.websocket("/ws")
async def membership_websocket(
    websocket: WebSocket,
    db: AsyncSession = Depends(get_db),
):
    """WebSocket endpoint for membership change events.

    Protocol:
    1. Client connects and sends its access token as first text message
    2. Server replies ``auth_ok`` with the subscribed channels, or
       ``auth_error`` and closes with 4001
    3. Server pushes membership events as JSON
    4. Client can send "ping" and the server replies "pong"
    """
    await websocket.accept()
    subscribed = False

    try:
        token = await websocket.receive_text()
        user_id = user_id_from_token(token)
        user = await access.get_user(db, user_id) if user_id is not None else None
        if user is None:
            await websocket.send_json({"type": "auth_error", "detail": "Invalid token"})
            await websocket.close(code=4001)
            return

        membership = await access.get_family_membership(db, user.id)
        family_id = membership.family_id if membership is not None else None
        group_ids = await _group_ids_for_family(db, family_id) if family_id is not None else []

        await connection_manager.subscribe(websocket, family_id, group_ids)
        subscribed = True
        await websocket.send_json({
            "type": "auth_ok",
            "user_id": str(user.id),
            "family_id": str(family_id) if family_id is not None else None,
            "group_ids": [str(group_id) for group_id in group_ids],
        })

        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_json({
                    "type": "pong",
                    "server_time": datetime.now(timezone.utc).isoformat(),
                })

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Membership websocket error")
        try:
            await websocket.close(code=1011)
        except RuntimeError:
            logger.debug("Websocket already closed")
    finally:
        if subscribed:
            await connection_manager.unsubscribe(websocket)
