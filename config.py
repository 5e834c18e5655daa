import os
from dataclasses import dataclass, field
from typing import List, Optional


def _split(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass
class Settings:
    database_url: str = "sqlite:///./shop.db"
    secret_key: str = "shop-secret-key"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    upload_dir: str = "static/images"
    public_base_url: str = ""
    default_payment_method: str = "CASH_ON_DELIVERY"
    tx_max_attempts: int = 3
    tx_retry_backoff: float = 0.05
    log_level: str = "INFO"
    store_name: str = "Manajir Originals"
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            secret_key=os.getenv("SECRET_KEY", cls.secret_key),
            algorithm=os.getenv("ALGORITHM", cls.algorithm),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", cls.access_token_expire_minutes)),
            cors_origins=_split(os.getenv("CORS_ORIGINS", "*")),
            upload_dir=os.getenv("UPLOAD_DIR", cls.upload_dir),
            public_base_url=os.getenv("PUBLIC_BASE_URL", cls.public_base_url),
            default_payment_method=os.getenv("DEFAULT_PAYMENT_METHOD", cls.default_payment_method),
            tx_max_attempts=int(os.getenv("TX_MAX_ATTEMPTS", cls.tx_max_attempts)),
            tx_retry_backoff=float(os.getenv("TX_RETRY_BACKOFF", cls.tx_retry_backoff)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            store_name=os.getenv("STORE_NAME", cls.store_name),
            admin_email=os.getenv("ADMIN_EMAIL") or None,
            admin_password=os.getenv("ADMIN_PASSWORD") or None,
        )
