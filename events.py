"""Server -> client frames. Every frame is a JSON object with a ``type`` key."""
from typing import Any, Dict, List

from schemas import ChatMessageOut, Identity


def joined(room_id: str, count: int, messages: List[ChatMessageOut]) -> Dict[str, Any]:
    return {"type": "joined", "room": room_id, "count": count, "messages": [m.wire() for m in messages]}


def left(room_id: str) -> Dict[str, Any]:
    return {"type": "left", "room": room_id}


def presence_count(room_id: str, count: int) -> Dict[str, Any]:
    return {"type": "presence-count", "room": room_id, "count": count}


def participant_joined(room_id: str, identity: Identity) -> Dict[str, Any]:
    return {"type": "participant-joined", "room": room_id, "user": identity.public()}


def participant_left(room_id: str, identity: Identity) -> Dict[str, Any]:
    return {"type": "participant-left", "room": room_id, "user": identity.public()}


def message(msg: ChatMessageOut) -> Dict[str, Any]:
    return {"type": "message", "room": msg.room_id, "message": msg.wire()}


def message_updated(msg: ChatMessageOut) -> Dict[str, Any]:
    return {"type": "message-updated", "room": msg.room_id, "message": msg.wire()}


def message_pinned(msg: ChatMessageOut) -> Dict[str, Any]:
    return {"type": "message-pinned", "room": msg.room_id, "message": msg.wire()}


def message_hidden(room_id: str, message_id: str) -> Dict[str, Any]:
    return {"type": "message-hidden", "room": room_id, "messageId": message_id}


def message_changed(msg: ChatMessageOut) -> Dict[str, Any]:
    """Room view of a changed message. A hidden message is retracted by id, never re-sent."""
    if msg.blocked:
        return message_hidden(msg.room_id, msg.id)
    return message_updated(msg)


def message_deleted(room_id: str, message_id: str) -> Dict[str, Any]:
    return {"type": "message-deleted", "room": room_id, "messageId": message_id}


def room_cleared(room_id: str, message_ids: List[str]) -> Dict[str, Any]:
    return {"type": "room-cleared", "room": room_id, "messageIds": message_ids}


def typing(room_id: str, identity: Identity) -> Dict[str, Any]:
    return {"type": "typing", "room": room_id, "user": identity.public()}


def stop_typing(room_id: str, identity: Identity) -> Dict[str, Any]:
    return {"type": "stopTyping", "room": room_id, "userId": identity.user_id}


def reported(msg: ChatMessageOut, report: Any) -> Dict[str, Any]:
    return {"type": "reported", "message": msg.wire(), "report": report.wire()}
