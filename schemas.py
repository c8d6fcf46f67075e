from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime

MessageKind = Literal["text", "file"]
SenderRole = Literal["participant", "administrator"]
ReportStatus = Literal["pending", "reviewed", "resolved"]

MAX_BODY_LEN = 4000


class WireModel(BaseModel):
    """Shape exchanged with clients: camelCase on the wire, snake_case in code."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Identity(BaseModel):
    user_id: str
    name: str = ""
    role: SenderRole = "participant"
    blocked: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == "administrator"

    def public(self) -> Dict[str, Any]:
        return {"id": self.user_id, "name": self.name, "role": self.role}


class AttachmentRef(WireModel):
    url: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    media_type: str = Field(..., min_length=1)


# Collection: chatmessage
class Message(BaseModel):
    room_id: str
    sender_id: str
    sender_name: str = ""
    body: str
    kind: MessageKind = "text"
    attachment: Optional[Dict[str, Any]] = None
    role: SenderRole = "participant"
    edited: bool = False
    blocked: bool = False
    pinned: bool = False
    reported: bool = False
    created_at: datetime


# Collection: report
class Report(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    message_id: Any = Field(..., description="ObjectId of the reported chatmessage")
    room_id: str
    reporter_id: str
    reason: str
    description: Optional[str] = None
    status: ReportStatus = "pending"
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# Collection: attachment (only accepted uploads are recorded)
class Attachment(BaseModel):
    url: str
    name: str
    media_type: str
    size: int
    path: str
    uploader_id: Optional[str] = None
    created_at: Optional[datetime] = None


# Collection: auditledger (append-only)
class AuditLedger(BaseModel):
    record_json: Dict[str, Any]
    record_hash: str
    prev_hash: Optional[str] = None
    created_at: Optional[datetime] = None


# -------------------- Outbound shapes --------------------

class ChatMessageOut(WireModel):
    id: str
    room_id: str
    sender_id: str
    sender_name: str
    body: str
    kind: MessageKind
    attachment: Optional[AttachmentRef] = None
    role: SenderRole
    edited: bool
    blocked: bool
    pinned: bool
    reported: bool
    report_count: int
    created_at: str


class ReportOut(WireModel):
    id: str
    message_id: str
    room_id: str
    reporter_id: str
    reporter_name: Optional[str] = None
    reason: str
    description: Optional[str] = None
    status: ReportStatus
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    created_at: Optional[str] = None
    message: Optional[ChatMessageOut] = None


class TranscriptRecord(WireModel):
    timestamp: str
    sender: str
    sender_id: str
    role: SenderRole
    body: str
    type: MessageKind
    edited: bool
    reported: bool
    blocked: bool


class UploadResult(WireModel):
    url: str
    name: str
    media_type: str
    size: int


# -------------------- Inbound channel commands --------------------

class JoinCommand(WireModel):
    type: Literal["join"]
    room_id: str = Field(..., min_length=1)


class LeaveCommand(WireModel):
    type: Literal["leave"]
    room_id: str = Field(..., min_length=1)


class SendCommand(WireModel):
    type: Literal["send"]
    room_id: str = Field(..., min_length=1)
    body: str = Field("", max_length=MAX_BODY_LEN)
    kind: MessageKind = "text"
    attachment: Optional[AttachmentRef] = None

    @model_validator(mode="after")
    def check_kind(self):
        if self.kind == "file" and self.attachment is None:
            raise ValueError("file messages need an attachment")
        if self.kind == "text" and not self.body.strip():
            raise ValueError("message body is required")
        return self


class TypingCommand(WireModel):
    type: Literal["typing"]
    room_id: str = Field(..., min_length=1)


class StopTypingCommand(WireModel):
    type: Literal["stopTyping"]
    room_id: str = Field(..., min_length=1)


class TogglePinCommand(WireModel):
    type: Literal["togglePin"]
    message_id: str
    pinned: bool


class EditCommand(WireModel):
    type: Literal["edit"]
    message_id: str
    body: str = Field(..., min_length=1, max_length=MAX_BODY_LEN)


class DeleteCommand(WireModel):
    type: Literal["delete"]
    message_id: str


class ReportCommand(WireModel):
    type: Literal["report"]
    message_id: str
    reason: str = Field(..., min_length=1)
    description: Optional[str] = None


Command = Annotated[
    Union[
        JoinCommand,
        LeaveCommand,
        SendCommand,
        TypingCommand,
        StopTypingCommand,
        TogglePinCommand,
        EditCommand,
        DeleteCommand,
        ReportCommand,
    ],
    Field(discriminator="type"),
]

command_adapter = TypeAdapter(Command)


# -------------------- HTTP request bodies --------------------

class EditRequest(WireModel):
    body: str = Field(..., min_length=1, max_length=MAX_BODY_LEN)


class ReportRequest(WireModel):
    reason: str = Field(..., min_length=1)
    description: Optional[str] = None


class ReviewRequest(WireModel):
    status: ReportStatus


class BlockRequest(WireModel):
    blocked: bool


class Analytics(WireModel):
    total_messages: int
    total_reports: int
    pending_reports: int
    active_chatrooms: int
    blocked_users: int
    online_participants: int
    online_by_room: Dict[str, int] = Field(default_factory=dict)


class AuditEntry(WireModel):
    record: Dict[str, Any]
    record_hash: str
    prev_hash: Optional[str] = None
    created_at: Optional[str] = None


class RoomCleared(WireModel):
    room_id: str
    deleted_messages: int
    message_ids: List[str] = Field(default_factory=list)


class RoomOverview(WireModel):
    room_id: str
    message_count: int
    last_message: Optional[str] = None
    last_message_time: Optional[str] = None
    participant_count: int
    reported_count: int
    online: int = 0
