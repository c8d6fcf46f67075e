import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _split(value: Optional[str], default: str) -> List[str]:
    return [part.strip() for part in (value or default).split(",") if part.strip()]


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "filmcollab"
    jwt_secret: str = ""
    jwt_algorithms: List[str] = Field(default_factory=lambda: ["HS256"])
    upload_dir: str = "uploads"
    upload_url_prefix: str = "/uploads"
    max_attachment_bytes: int = 10 * 1024 * 1024
    room_collections: List[str] = Field(default_factory=lambda: ["script", "project"])
    pin_policy: str = Field("member", pattern="^(member|owner)$")
    persist_timeout: Optional[float] = None
    history_limit: int = 100
    log_level: str = "INFO"
    port: int = 8000
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        timeout = os.getenv("PERSIST_TIMEOUT")
        return cls(
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "filmcollab"),
            jwt_secret=os.getenv("JWT_SECRET", ""),
            jwt_algorithms=_split(os.getenv("JWT_ALGORITHMS"), "HS256"),
            upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
            max_attachment_bytes=int(os.getenv("MAX_ATTACHMENT_BYTES", 10 * 1024 * 1024)),
            room_collections=_split(os.getenv("ROOM_COLLECTIONS"), "script,project"),
            pin_policy=os.getenv("PIN_POLICY", "member"),
            persist_timeout=float(timeout) if timeout else None,
            history_limit=int(os.getenv("HISTORY_LIMIT", 100)),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            port=int(os.getenv("PORT", 8000)),
            cors_origins=_split(os.getenv("CORS_ORIGINS"), "*"),
        )
