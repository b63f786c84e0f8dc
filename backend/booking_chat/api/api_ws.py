# booking_chat/api/api_ws.py
# WebSocket transport: conversation room (/ws/bookings/{id}) and per-user
# notifications (/ws/notifications). Both relay envelopes from the in-process
# hub; clients may send ping and typing frames.

from __future__ import annotations

import asyncio
import json
import logging
import time
from types import SimpleNamespace
from typing import Any, List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from starlette.exceptions import WebSocketException

from .. import crud
from ..database import get_db_session
from ..realtime import hub as realtime
from ..realtime.hub import Envelope, Subscription
from ..services import channel_directory
from ..utils.errors import AccessDeniedError, NotFoundError
from .auth import TokenError, decode_access_token, get_user_by_email

logger = logging.getLogger(__name__)
router = APIRouter()

SEND_TIMEOUT = 10.0
MAX_BEARER_LEN = 4096
WS_4401_UNAUTHORIZED = 4401
WS_4403_FORBIDDEN = 4403


# -------- auth helpers --------

def _extract_bearer_token(ws: WebSocket) -> tuple[Optional[str], str]:
    """Return (token, source). Source is one of protocol/query/authorization/none."""
    proto = ws.headers.get("sec-websocket-protocol", "") or ""
    if proto:
        parts = [p.strip() for p in proto.split(",")]
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
            return parts[1], "protocol"
    qtok = ws.query_params.get("token")
    if qtok:
        return qtok, "query"
    auth = ws.headers.get("authorization")
    if auth and auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip(), "authorization"
    return None, "none"


def _accepted_subprotocol(ws: WebSocket) -> Optional[str]:
    """Browsers drop the socket unless the chosen subprotocol is echoed back."""
    proto = ws.headers.get("sec-websocket-protocol", "") or ""
    first = proto.split(",")[0].strip().lower()
    return "bearer" if first == "bearer" else None


def _call_with_session(fn, *args, **kwargs):
    """Run a DB function with a short-lived session (sync)."""
    with get_db_session() as db:
        return fn(db, *args, **kwargs)


async def _ws_db_call(fn, *args, **kwargs):
    return await run_in_threadpool(_call_with_session, fn, *args, **kwargs)


def _lookup_user(db, email: str):
    user = get_user_by_email(db, email)
    if user is None or not user.is_active:
        return None
    # Light, detached object is enough for the socket's lifetime
    return SimpleNamespace(id=int(user.id), email=user.email)


async def _authenticate(websocket: WebSocket):
    token, source = _extract_bearer_token(websocket)
    if token and len(token) > MAX_BEARER_LEN:
        token = None
        source = f"{source}_oversize"
    try:
        payload = decode_access_token(token)
    except TokenError as exc:
        logger.warning("WS auth failed: %s", exc.reason, extra={"source": source})
        raise WebSocketException(code=WS_4401_UNAUTHORIZED, reason="Invalid token")
    user = await _ws_db_call(_lookup_user, payload["sub"])
    if user is None:
        logger.warning("WS auth failed: user_not_found", extra={"source": source})
        raise WebSocketException(code=WS_4401_UNAUTHORIZED, reason="Invalid token")
    return user


# -------- relay helpers --------

async def _send(websocket: WebSocket, env: Envelope) -> None:
    await asyncio.wait_for(websocket.send_text(env.to_json()), timeout=SEND_TIMEOUT)


async def _recv_envelope(websocket: WebSocket) -> Envelope:
    text = await websocket.receive_text()
    try:
        return Envelope.from_raw(json.loads(text))
    except json.JSONDecodeError:
        return Envelope()


async def _pump(websocket: WebSocket, sub: Subscription, after=None) -> None:
    """Forward every envelope of ``sub`` until it is closed or the socket dies."""
    try:
        async for env in sub:
            await _send(websocket, env)
            if after is not None:
                await after(env)
    except (WebSocketDisconnect, RuntimeError, asyncio.TimeoutError):
        # Socket went away; the receive loop notices and cleans up
        return


async def _shutdown(subs: List[Subscription], tasks: List[asyncio.Task]) -> None:
    for sub in subs:
        sub.close()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


# -------- /ws/bookings/{id} --------

@router.websocket("/ws/bookings/{booking_id}")
async def conversation_ws(websocket: WebSocket, booking_id: int):
    user = await _authenticate(websocket)
    try:
        conversation = await _ws_db_call(
            channel_directory.resolve_conversation, booking_id, user.id
        )
    except (NotFoundError, AccessDeniedError):
        logger.warning(
            "WS conversation forbidden booking_id=%s user_id=%s", booking_id, user.id
        )
        raise WebSocketException(code=WS_4403_FORBIDDEN, reason="Forbidden")

    await websocket.accept(subprotocol=_accepted_subprotocol(websocket))
    started = time.time()
    subs = list(realtime.open_conversation_feeds(booking_id))
    tasks = [asyncio.create_task(_pump(websocket, sub)) for sub in subs]
    logger.info("ws.conversation.connect", extra={"booking_id": booking_id, "user_id": user.id})
    try:
        while True:
            env = await _recv_envelope(websocket)
            if env.v != 1:
                continue
            if env.type == "ping":
                await _send(websocket, Envelope(type="pong"))
                continue
            if env.type == "typing":
                # Closed chats accept no new activity, typing included
                if conversation.is_open:
                    await realtime.publish_typing(booking_id, user.id)
                continue
            # everything else is server-push only
    except WebSocketDisconnect as exc:
        logger.info(
            "ws.conversation.disconnect",
            extra={
                "booking_id": booking_id,
                "user_id": user.id,
                "code": getattr(exc, "code", None),
                "duration_ms": int((time.time() - started) * 1000),
            },
        )
    finally:
        await _shutdown(subs, tasks)


# -------- /ws/notifications --------

def _unread_snapshot(db, user_id: int) -> dict[str, Any]:
    counts = crud.crud_message.per_conversation_unread_counts(db, user_id)
    return {"total": sum(counts.values()), "by_conversation": {str(k): v for k, v in counts.items()}}


@router.websocket("/ws/notifications")
async def notifications_ws(websocket: WebSocket):
    user = await _authenticate(websocket)
    await websocket.accept(subprotocol=_accepted_subprotocol(websocket))
    started = time.time()

    async def push_unread(_env: Optional[Envelope] = None) -> None:
        snapshot = await _ws_db_call(_unread_snapshot, user.id)
        await _send(websocket, Envelope(type="unread_total", topic=realtime.user_topic(user.id), payload=snapshot))

    sub = realtime.open_user_feed(user.id)
    tasks: List[asyncio.Task] = []
    try:
        await push_unread()
        tasks.append(asyncio.create_task(_pump(websocket, sub, after=push_unread)))
        logger.info("ws.notifications.connect", extra={"user_id": user.id})
        while True:
            env = await _recv_envelope(websocket)
            if env.type == "ping":
                await _send(websocket, Envelope(type="pong"))
            # notifications are server-push only
    except WebSocketDisconnect as exc:
        logger.info(
            "ws.notifications.disconnect",
            extra={
                "user_id": user.id,
                "code": getattr(exc, "code", None),
                "duration_ms": int((time.time() - started) * 1000),
            },
        )
    finally:
        await _shutdown([sub], tasks)
