from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    APP_NAME: str = "Quotation Engine"
    LOG_LEVEL: str = "INFO"
    DB_ECHO_LOG: bool = False

    # Database settings
    DB_USER: str = "user"
    DB_PASSWORD: str = "password"
    DB_HOST: str = "postgres"
    DB_PORT: int = 5432
    DB_NAME: str = "quotation_db"

    @property
    def DATABASE_URL(self) -> str:
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Document numbering: {seq}/{DOC}/{ORG}/{romanMonth}/{year}
    DOCUMENT_ORG_CODE: str = "STM"
    SEQUENCE_MAX_ATTEMPTS: int = 5
    SEQUENCE_RETRY_BASE_DELAY: float = 0.05 # seconds, doubled per attempt and jittered

    # Platform service (identity, notifications, notes-image storage)
    PLATFORM_API_URL: str = "http://platform:8080/api"
    PLATFORM_API_TOKEN: Optional[str] = None
    PLATFORM_TIMEOUT_SECONDS: float = 5.0

    # Prefix for links carried by notifications, e.g. FRONTEND_LINK + "/quotations"
    FRONTEND_LINK: str = "http://localhost:5173"

    model_config = SettingsConfigDict(env_file=".env", extra='ignore', env_file_encoding='utf-8')

settings = Settings()
