from typing import List, Optional

from pydantic import ByteSize
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    MAX_FILE_SIZE: ByteSize = ByteSize(100 * 1024 ** 3)
    CHUNK_SIZE: ByteSize = ByteSize(4 * 1024 ** 2)
    UPLOAD_DIR: str = "./uploads"
    DATABASE_URL: str = "sqlite:///./drcv.db"

    UPLOAD_HOST: str = "0.0.0.0"
    UPLOAD_PORT: int = 8080
    ADMIN_HOST: str = "127.0.0.1"
    ADMIN_PORT: int = 8081

    UPLOAD_TIMEOUT: int = 300  # seconds
    CLEANUP_INTERVAL: int = 10  # seconds
    UPLOAD_STALE_TIMEOUT: int = 60  # seconds
    CLIENT_STALE_TIMEOUT: int = 120  # seconds
    FEED_INTERVAL: float = 1.0  # seconds
    SHUTDOWN_GRACE_PERIOD: int = 3  # seconds
    DEFAULT_PAGE_SIZE: int = 100

    TRUSTED_PROXIES: List[str] = ["127.0.0.1", "::1"]
    TUNNEL_PROVIDER: Optional[str] = None
    CF_DOMAIN: str = "drcv.app"

    ADMIN_SECRET_KEY: Optional[str] = None
    ALGORITHM: str = "HS256"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="DRCV_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def max_request_size(self) -> int:
        # one chunk plus multipart framing
        return int(self.CHUNK_SIZE) + 1024 * 1024

settings = Settings()
