"""
Notification endpoints + the live WebSocket channel.

HTTP routes read and acknowledge the persisted notifications; the WebSocket
only shortcuts delivery of new ones to connected clients.
"""
import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from api.deps import get_notifier, get_registry
from config.settings import settings
from core.auth import Identity, ensure_can_view, get_current_identity, get_verifier, require_owner
from core.errors import UnauthorizedError
from core.response import ok
from models.schemas import NotificationBatchCreate, NotificationCreate, NotificationOut
from services.channel_registry import ChannelRegistry
from services.notification_service import MAX_LIST_LIMIT, NotificationDraft, NotificationService

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()

WS_POLICY_VIOLATION = 1008


def _out(row) -> dict:
    return NotificationOut.from_row(row).model_dump(mode="json")


def _draft(payload: NotificationCreate, sent_by: str) -> NotificationDraft:
    return NotificationDraft(
        subscriber_id=payload.subscriber_id,
        subscriber_name=payload.subscriber_name,
        title=payload.title,
        message=payload.message,
        type=payload.type,
        related=payload.related,
        sent_by=sent_by,
    )


@router.get("/subscriber/{subscriber_id}")
async def list_notifications(
    subscriber_id: str,
    limit: int = Query(50, ge=1, le=MAX_LIST_LIMIT),
    identity: Identity = Depends(get_current_identity),
    notifier: NotificationService = Depends(get_notifier),
):
    ensure_can_view(identity, subscriber_id)
    rows = await notifier.list_for_subscriber(subscriber_id, limit)
    return ok([_out(r) for r in rows])


@router.get("/count/{subscriber_id}")
async def unread_count(
    subscriber_id: str,
    identity: Identity = Depends(get_current_identity),
    notifier: NotificationService = Depends(get_notifier),
):
    ensure_can_view(identity, subscriber_id)
    return ok({"unread": await notifier.unread_count(subscriber_id)})


@router.patch("/{notification_id}/read")
async def mark_read(
    notification_id: int,
    identity: Identity = Depends(get_current_identity),
    notifier: NotificationService = Depends(get_notifier),
):
    row = await notifier.get(notification_id)
    ensure_can_view(identity, row.subscriber_id)
    return ok(_out(await notifier.mark_read(notification_id)))


@router.patch("/subscriber/{subscriber_id}/read-all")
async def mark_all_read(
    subscriber_id: str,
    identity: Identity = Depends(get_current_identity),
    notifier: NotificationService = Depends(get_notifier),
):
    ensure_can_view(identity, subscriber_id)
    return ok({"updated": await notifier.mark_all_read(subscriber_id)})


@router.post("", status_code=201)
async def send_notification(
    payload: NotificationCreate,
    owner: Identity = Depends(require_owner),
    notifier: NotificationService = Depends(get_notifier),
):
    row = await notifier.emit(_draft(payload, owner.subscriber_id))
    return ok(_out(row))


@router.post("/batch", status_code=201)
async def send_batch(
    payload: NotificationBatchCreate,
    owner: Identity = Depends(require_owner),
    notifier: NotificationService = Depends(get_notifier),
):
    rows = await notifier.emit_batch([_draft(p, owner.subscriber_id) for p in payload.notifications])
    return ok({"count": len(rows), "notifications": [_out(r) for r in rows]})


@router.get("/connections")
async def connections(
    _: Identity = Depends(require_owner),
    registry: ChannelRegistry = Depends(get_registry),
):
    return ok({"connections": await registry.connection_count()})


async def _authenticate(websocket: WebSocket) -> Identity:
    token = websocket.query_params.get("token")
    if not token:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout=settings.WS_AUTH_TIMEOUT_SEC)
        try:
            message = json.loads(raw)
        except ValueError:
            raise UnauthorizedError("Authentication required")
        if not isinstance(message, dict) or message.get("type") != "auth":
            raise UnauthorizedError("Authentication required")
        token = message.get("token")
    return get_verifier().verify(token)


@ws_router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket):
    registry: ChannelRegistry = websocket.app.state.channel_registry
    await websocket.accept()
    try:
        identity = await _authenticate(websocket)
    except WebSocketDisconnect:
        return
    except asyncio.TimeoutError:
        await websocket.send_json({"type": "error", "message": "Authentication timed out"})
        await websocket.close(code=WS_POLICY_VIOLATION)
        return
    except UnauthorizedError as e:
        await websocket.send_json({"type": "error", "message": e.message})
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    await registry.register(identity.subscriber_id, websocket)
    try:
        await websocket.send_json({"type": "connected", "subscriber_id": identity.subscriber_id})
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid message"})
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning("WebSocket for %s closed on error: %s", identity.subscriber_id, e)
    finally:
        await registry.unregister(websocket)
