import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.database import Database

from attachments import AttachmentStore
from audit import AuditLog
from auth import IdentityVerifier, RoomDirectory, bearer_token
from database import ensure_indexes, get_database, run_db
from errors import ChatError
from gateway import ChannelGateway
from moderation import ModerationEngine, require_admin
from presence import RoomManager
from schemas import (
    Analytics, AuditEntry, BlockRequest, ChatMessageOut, EditRequest, Identity, ReportOut,
    ReportRequest, ReportStatus, ReviewRequest, RoomCleared, RoomOverview, TranscriptRecord,
    UploadResult,
)
from settings import Settings
from store import MessageStore, ReportStore

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    db = db if db is not None else get_database(settings)

    rooms = RoomManager()
    reports = ReportStore(db)
    messages = MessageStore(db, reports)
    audit = AuditLog(db)
    attachments = AttachmentStore(db, settings.upload_dir, settings.upload_url_prefix,
                                  settings.max_attachment_bytes)
    verifier = IdentityVerifier(db, settings.jwt_secret, settings.jwt_algorithms)
    directory = RoomDirectory(db, settings.room_collections)
    moderation = ModerationEngine(db, messages, reports, rooms, audit, timeout=settings.persist_timeout)
    gateway = ChannelGateway(rooms, messages, moderation, attachments, verifier, directory,
                             pin_policy=settings.pin_policy, history_limit=settings.history_limit,
                             timeout=settings.persist_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_db(ensure_indexes, db)
        swept = await moderation.sweep_orphan_reports()
        logger.info("Chat backend ready (swept %d orphaned reports)", swept)
        yield
        rooms.clear()

    app = FastAPI(title="Film Collab Chat Backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.rooms = rooms
    app.state.gateway = gateway
    app.state.moderation = moderation

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.mount(settings.upload_url_prefix, StaticFiles(directory=settings.upload_dir), name="uploads")

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    async def current_identity(authorization: Optional[str] = Header(None)) -> Identity:
        return await run_db(verifier.verify, bearer_token(authorization), timeout=settings.persist_timeout)

    async def admin_identity(identity: Identity = Depends(current_identity)) -> Identity:
        require_admin(identity)
        return identity

    # -------------------- HTTP Endpoints --------------------

    @app.get("/")
    def read_root():
        return {"message": "Film Collab Chat Backend Running"}

    @app.get("/chat/{room_id}/messages", response_model=List[ChatMessageOut])
    async def room_messages(room_id: str, limit: Optional[int] = Query(None, ge=1, le=1000),
                            identity: Identity = Depends(current_identity)):
        await run_db(directory.require, room_id)
        return await run_db(messages.history, room_id, limit)

    @app.get("/chat/{room_id}/presence")
    async def room_presence(room_id: str, identity: Identity = Depends(current_identity)):
        return {"room": room_id, "count": rooms.count(room_id)}

    @app.put("/chat/messages/{message_id}", response_model=ChatMessageOut)
    async def edit_message(message_id: str, payload: EditRequest,
                           identity: Identity = Depends(current_identity)):
        return await gateway.edit_message(identity, message_id, payload.body)

    @app.delete("/chat/messages/{message_id}")
    async def delete_message(message_id: str, identity: Identity = Depends(current_identity)):
        await gateway.delete_message(identity, message_id)
        return {"msg": "Message deleted"}

    @app.post("/chat/messages/{message_id}/report")
    async def report_message(message_id: str, payload: ReportRequest,
                             identity: Identity = Depends(current_identity)):
        message, report = await gateway.report_message(identity, message_id, payload.reason, payload.description)
        return {"msg": "Message reported successfully", "message": message.wire(), "report": report.wire()}

    @app.post("/chat/upload", response_model=UploadResult)
    async def upload(file: UploadFile = File(...), identity: Identity = Depends(current_identity)):
        try:
            return await run_db(attachments.save, file.file, file.filename, file.content_type, identity.user_id)
        finally:
            await file.close()

    # -------------------- Admin Endpoints --------------------

    @app.get("/admin/chat/reports", response_model=List[ReportOut])
    async def list_reports(status: Optional[ReportStatus] = None, message_id: Optional[str] = None,
                           room_id: Optional[str] = None, admin: Identity = Depends(admin_identity)):
        return await moderation.list_reports(admin, status=status, message_id=message_id, room_id=room_id)

    @app.put("/admin/chat/reports/{report_id}", response_model=ReportOut)
    async def review_report(report_id: str, payload: ReviewRequest, admin: Identity = Depends(admin_identity)):
        return await moderation.review_report(report_id, payload.status, admin)

    @app.put("/admin/chat/messages/{message_id}", response_model=ChatMessageOut)
    async def global_edit(message_id: str, payload: EditRequest, admin: Identity = Depends(admin_identity)):
        return await moderation.global_edit(message_id, payload.body, admin)

    @app.delete("/admin/chat/messages/{message_id}")
    async def global_delete(message_id: str, admin: Identity = Depends(admin_identity)):
        await moderation.global_delete(message_id, admin)
        return {"msg": "Message deleted globally"}

    @app.put("/admin/chat/messages/{message_id}/visibility", response_model=ChatMessageOut)
    async def message_visibility(message_id: str, payload: BlockRequest, admin: Identity = Depends(admin_identity)):
        return await moderation.hide_message(message_id, payload.blocked, admin)

    @app.put("/admin/chat/users/{user_id}/block")
    async def block_user(user_id: str, payload: BlockRequest, admin: Identity = Depends(admin_identity)):
        identity = await moderation.block_user(user_id, payload.blocked, admin)
        return {**identity.public(), "blocked": identity.blocked}

    @app.get("/admin/chat/export/{room_id}", response_model=List[TranscriptRecord])
    async def export_room(room_id: str, admin: Identity = Depends(admin_identity)):
        return await moderation.export_transcript(room_id, admin)

    @app.get("/admin/chat/rooms", response_model=List[RoomOverview])
    async def list_rooms(admin: Identity = Depends(admin_identity)):
        return await moderation.list_rooms(admin)

    @app.delete("/admin/chat/rooms/{room_id}", response_model=RoomCleared)
    async def clear_room(room_id: str, admin: Identity = Depends(admin_identity)):
        return await moderation.clear_room(room_id, admin)

    @app.get("/admin/chat/analytics", response_model=Analytics)
    async def analytics(admin: Identity = Depends(admin_identity)):
        return await moderation.analytics(admin)

    @app.get("/admin/chat/audit", response_model=List[AuditEntry])
    async def audit_log(limit: int = Query(100, ge=1, le=1000), admin: Identity = Depends(admin_identity)):
        return await moderation.audit_log(admin, limit)

    # -------------------- WebSocket Endpoint --------------------

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        await gateway.serve(websocket)

    # -------------------- Diagnostics --------------------

    @app.get("/test")
    def test_database():
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_name": settings.database_name,
            "collections": [],
            "online_rooms": len(rooms.snapshot()),
        }
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        return response

    return app


_settings = Settings.from_env()

logging.basicConfig(
    level=_settings.log_level,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

app = create_app(_settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=_settings.port)
