"""Real-time chat rooms, one per gig.

Membership lives in a :class:`ChatTransport`.  :class:`LocalChatTransport`
keeps it in process, so with several service instances a client only hears
messages sent through the instance it is connected to; a transport backed
by a message bus can be swapped in without touching :class:`ChatRouter`.
"""

import logging
from typing import Any, Dict, Optional, Set

from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from database import DocumentStore, check_doc_id, utcnow
from errors import AuthorizationError, ServiceError, ValidationError
from schemas import ChatMessageIn, JoinChatIn, TypingIn

logger = logging.getLogger("oodoo.chat")

# client -> server
JOIN = "joinGigChat"
LEAVE = "leaveGigChat"
SEND = "sendMessage"
TYPING = "typing"
# server -> client
HISTORY = "chatHistory"
NEW_MESSAGE = "newMessage"
USER_TYPING = "userTyping"
ERROR = "error"


def messages_path(gig_id: str) -> str:
    return f"chats/{check_doc_id(gig_id)}/messages"


def topic(gig_id: str) -> str:
    return f"gig:{gig_id}"


class ChatConnection:
    """A live client.  Subclasses deliver ``(event, data)`` pairs."""

    async def send(self, event: str, data: Any) -> None:
        raise NotImplementedError


class WebSocketConnection(ChatConnection):
    def __init__(self, websocket):
        self.websocket = websocket

    async def send(self, event, data):
        await self.websocket.send_json({"event": event, "data": jsonable_encoder(data)})


class ChatTransport:
    def subscribe(self, topic: str, connection: ChatConnection) -> None:
        raise NotImplementedError

    def unsubscribe(self, topic: str, connection: ChatConnection) -> None:
        raise NotImplementedError

    def unsubscribe_all(self, connection: ChatConnection) -> None:
        raise NotImplementedError

    async def publish(self, topic: str, event: str, data: Any,
                      exclude: Optional[ChatConnection] = None) -> None:
        raise NotImplementedError


class LocalChatTransport(ChatTransport):
    def __init__(self):
        self.rooms: Dict[str, Set[ChatConnection]] = {}

    def subscribe(self, topic, connection):
        self.rooms.setdefault(topic, set()).add(connection)

    def unsubscribe(self, topic, connection):
        members = self.rooms.get(topic)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del self.rooms[topic]

    def unsubscribe_all(self, connection):
        for name in list(self.rooms):
            self.unsubscribe(name, connection)

    def members(self, topic: str) -> Set[ChatConnection]:
        return set(self.rooms.get(topic, ()))

    async def publish(self, topic, event, data, exclude=None):
        for connection in list(self.rooms.get(topic, ())):
            if connection is exclude:
                continue
            try:
                await connection.send(event, data)
            except Exception as exc:  # a dead socket must not break the broadcast
                logger.warning("Dropping chat connection after failed delivery on %s: %s", topic, exc)
                self.unsubscribe_all(connection)


class ChatRouter:
    def __init__(self, store: DocumentStore, transport: Optional[ChatTransport] = None):
        self.store = store
        self.transport = transport or LocalChatTransport()

    async def join(self, connection: ChatConnection, gig_id: str) -> None:
        path = messages_path(gig_id)
        # subscription precedes the history read
        self.transport.subscribe(topic(gig_id), connection)
        try:
            messages = await run_in_threadpool(self.store.query, path, order_by=[("timestamp", "asc")])
        except Exception:
            self.transport.unsubscribe(topic(gig_id), connection)
            raise
        logger.debug("Connection joined %s, replaying %d messages", topic(gig_id), len(messages))
        await connection.send(HISTORY, messages)

    async def send_message(self, gig_id: str, sender_id: str, body: str) -> dict:
        record = {"userId": sender_id, "message": body, "timestamp": utcnow()}
        # persisted before broadcast: a failed write is never delivered
        message_id = await run_in_threadpool(self.store.add, messages_path(gig_id), record)
        record = {"id": message_id, **record}
        await self.transport.publish(topic(gig_id), NEW_MESSAGE, record)
        return record

    async def typing(self, connection: ChatConnection, gig_id: str, sender_id: str) -> None:
        await self.transport.publish(topic(gig_id), USER_TYPING, sender_id, exclude=connection)

    async def leave(self, connection: ChatConnection, gig_id: Optional[str] = None) -> None:
        if gig_id is None:
            self.transport.unsubscribe_all(connection)
        else:
            self.transport.unsubscribe(topic(gig_id), connection)

    async def handle_event(self, connection: ChatConnection, caller_id: str, frame: Any) -> None:
        """Dispatch one client frame; failures are reported to that client only."""
        try:
            await self._dispatch(connection, caller_id, frame)
        except ServiceError as exc:
            await connection.send(ERROR, exc.to_dict())

    async def _dispatch(self, connection, caller_id, frame):
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            raise ValidationError("Frames must be objects with an 'event' name")
        event, data = frame["event"], frame.get("data")

        if event in (JOIN, LEAVE):
            payload = _parse(JoinChatIn, {"gigId": data} if isinstance(data, str) else data)
            if event == JOIN:
                await self.join(connection, payload.gigId)
            else:
                await self.leave(connection, payload.gigId)
        elif event == SEND:
            payload = _parse(ChatMessageIn, data)
            _check_sender(payload.userId, caller_id)
            body = payload.message.strip()
            if not body:
                raise ValidationError("Message must not be empty")
            await self.send_message(payload.gigId, caller_id, body)
        elif event == TYPING:
            payload = _parse(TypingIn, data)
            _check_sender(payload.userId, caller_id)
            await self.typing(connection, payload.gigId, caller_id)
        else:
            raise ValidationError(f"Unknown event {event!r}")


def _parse(model, data):
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'data'}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Validation failed: {details}")


def _check_sender(user_id: Optional[str], caller_id: str) -> None:
    if user_id is not None and user_id != caller_id:
        raise AuthorizationError("Cannot send on behalf of another user")
