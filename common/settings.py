import os
from pydantic_settings import BaseSettings

def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}

class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "credits")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    jwt_issuer: str = os.getenv("JWT_ISSUER", "asmr-credits")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    default_account_credits: int = int(os.getenv("DEFAULT_ACCOUNT_CREDITS", "20"))
    history_default_page_size: int = int(os.getenv("HISTORY_DEFAULT_PAGE_SIZE", "20"))
    history_max_page_size: int = int(os.getenv("HISTORY_MAX_PAGE_SIZE", "100"))
    verify_invariant_on_write: bool = _flag("VERIFY_INVARIANT_ON_WRITE", "true")

    audit_interval_minutes: int = int(os.getenv("AUDIT_INTERVAL_MINUTES", "15"))
    outbox_poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))
    outbox_batch_size: int = int(os.getenv("OUTBOX_BATCH_SIZE", "50"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+pymysql://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

settings = Settings()
