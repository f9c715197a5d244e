from typing import List, Optional, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "Support Relay"
    ENVIRONMENT: str = "development"
    API_V1_STR: str = "/api/v1"

    # Security
    SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if isinstance(v, str):
            v = v.strip("[").strip("]").strip('"').strip("'")
            if not v:
                return []
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, list):
            return v
        raise ValueError(v)

    # Database (postgresql+asyncpg in production, sqlite+aiosqlite locally)
    DATABASE_URL: str = "sqlite+aiosqlite:///./support_relay.db"

    # Auth codes
    AUTH_CODE_LENGTH: int = 6
    AUTH_CODE_TTL_MINUTES: int = 15
    AUTH_CODE_MAX_ATTEMPTS: int = 10

    # Conversations & messages
    CONVERSATION_LIST_LIMIT: int = 50
    MESSAGE_PAGE_MAX: int = 100

    # Uploads
    UPLOAD_DIR: str = "uploads"
    UPLOAD_MAX_BYTES: int = 10 * 1024 * 1024
    PUBLIC_FILES_BASE_URL: str = "http://localhost:8000/files"

    # Operator directory / push hook
    OPERATOR_DIRECTORY_URL: Optional[str] = None
    OPERATOR_PUSH_URL: Optional[str] = None
    OPERATOR_DIRECTORY_TIMEOUT: float = 5.0

    # Realtime
    OUTBOUND_QUEUE_SIZE: int = 256

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file="backend_config.env",
        env_file_encoding="utf-8"
    )

settings = Settings()
