"""
WebSocket endpoint.

A client connects to /ws with an access token (?token= or a Bearer header)
and is placed in its personal user room. It can then ask to join team and
task rooms; every join re-checks membership or VIEW access in a short-lived
session, so an idle socket holds no pooled connection. Server events
arrive as {"event": name, "data": {...}}.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import sessionmaker

import models
from auth.dependencies import authenticate_token
from auth.permissions import get_membership, require_task_access
from database import get_session_factory
from errors import ServiceError
from realtime.registry import ChannelRegistry, get_channel_registry, task_room, team_room, user_room

logger = logging.getLogger(__name__)

router = APIRouter()

# Application-defined close code for a failed handshake authentication
WS_UNAUTHENTICATED = 4401


class ClientMessage(BaseModel):
    type: Literal["join-team", "leave-team", "join-task", "leave-task", "typing-start", "typing-stop"]
    team_id: Optional[int] = None
    task_id: Optional[int] = None


def _bearer_token(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


async def _reply_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json({"event": "error", "data": {"message": message}})


async def _handle_message(
    websocket: WebSocket,
    user: models.User,
    message: ClientMessage,
    registry: ChannelRegistry,
    sessions: sessionmaker,
) -> None:
    if message.type in ("join-team", "leave-team"):
        if message.team_id is None:
            await _reply_error(websocket, "team_id is required")
            return
        room = team_room(message.team_id)

        if message.type == "leave-team":
            registry.leave(room, websocket)
            await websocket.send_json({"event": "left", "data": {"room": room}})
            return

        with sessions() as db:
            is_member = get_membership(db, message.team_id, user.id) is not None
        if not is_member:
            logger.info(f"User {user.id} denied join to {room}")
            await _reply_error(websocket, "Team not found")
            return
        registry.join(room, websocket)
        logger.info(f"User {user.id} joined team room {room}")
        await websocket.send_json({"event": "joined", "data": {"room": room}})
        return

    if message.task_id is None:
        await _reply_error(websocket, "task_id is required")
        return
    room = task_room(message.task_id)
    presence = {"user_id": user.id, "username": user.username, "task_id": message.task_id}

    if message.type == "join-task":
        try:
            with sessions() as db:
                require_task_access(db, user, message.task_id, models.SharePermission.VIEW)
        except ServiceError as e:
            logger.info(f"User {user.id} denied join to {room}: {e.message}")
            await _reply_error(websocket, e.message)
            return
        registry.join(room, websocket)
        logger.info(f"User {user.id} joined task room {room}")
        await websocket.send_json({"event": "joined", "data": {"room": room}})
        await registry.broadcast(room, "user-joined-task", presence, exclude=websocket)

    elif message.type == "leave-task":
        registry.leave(room, websocket)
        await websocket.send_json({"event": "left", "data": {"room": room}})
        await registry.broadcast(room, "user-left-task", presence)

    elif websocket in registry.members(room):
        event = "user-typing" if message.type == "typing-start" else "user-stopped-typing"
        await registry.broadcast(room, event, presence, exclude=websocket)

    else:
        await _reply_error(websocket, "Join the task before sending typing updates")


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = None,
    registry: ChannelRegistry = Depends(get_channel_registry),
    sessions: sessionmaker = Depends(get_session_factory),
):
    try:
        with sessions() as db:
            user = authenticate_token(_bearer_token(websocket, token), db)
    except ServiceError as e:
        logger.info(f"WebSocket connection rejected: {e.message}")
        await websocket.close(code=WS_UNAUTHENTICATED)
        return

    await websocket.accept()
    registry.join(user_room(user.id), websocket)
    logger.info(f"User connected: {user.username} ({user.id})")

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = ClientMessage.model_validate_json(raw)
            except ValidationError:
                await _reply_error(websocket, "Malformed message")
                continue
            await _handle_message(websocket, user, message, registry, sessions)
    except WebSocketDisconnect:
        logger.info(f"User disconnected: {user.username} ({user.id})")
    finally:
        logger.debug(f"Dropping user {user.id} from rooms: {sorted(registry.rooms_of(websocket))}")
        registry.leave_all(websocket)
