import os
from dataclasses import dataclass, field
from typing import List

DEFAULT_SECRET_KEY = "dev-secret-key-change-me"


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    secret_key: str = DEFAULT_SECRET_KEY
    algorithm: str = "HS256"
    # login tokens live 12h, registration tokens 1h
    access_token_expire_minutes: int = 60 * 12
    registration_token_expire_minutes: int = 60
    database_url: str = ""
    database_name: str = "oodoo"
    transaction_attempts: int = 5
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    app_url: str = "http://localhost:8000"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    mail_sender: str = "Oodoo <no-reply@oodoo.com>"
    minimum_age: int = 18
    # login attempts allowed per client within the window
    login_max_attempts: int = 10
    login_window_minutes: int = 15
    log_level: str = "INFO"
    port: int = 8000


def load_settings() -> Settings:
    return Settings(
        secret_key=os.getenv("SECRET_KEY", DEFAULT_SECRET_KEY).strip() or DEFAULT_SECRET_KEY,
        algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 12)),
        registration_token_expire_minutes=int(os.getenv("REGISTRATION_TOKEN_EXPIRE_MINUTES", 60)),
        database_url=os.getenv("DATABASE_URL", "").strip(),
        database_name=os.getenv("DATABASE_NAME", "oodoo"),
        transaction_attempts=int(os.getenv("TRANSACTION_ATTEMPTS", 5)),
        cors_origins=_split_csv(os.getenv("CORS_ORIGINS", "*")) or ["*"],
        app_url=os.getenv("APP_URL", "http://localhost:8000").rstrip("/"),
        smtp_host=os.getenv("SMTP_HOST", "").strip(),
        smtp_port=int(os.getenv("SMTP_PORT", 587)),
        smtp_user=os.getenv("SMTP_USER", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        mail_sender=os.getenv("MAIL_SENDER", "Oodoo <no-reply@oodoo.com>"),
        minimum_age=int(os.getenv("MINIMUM_AGE", 18)),
        login_max_attempts=int(os.getenv("LOGIN_MAX_ATTEMPTS", 10)),
        login_window_minutes=int(os.getenv("LOGIN_WINDOW_MINUTES", 15)),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        port=int(os.getenv("PORT", 8000)),
    )
