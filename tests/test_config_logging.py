import logging

from logging_config import setup_logging
from settings import DEFAULT_SECRET_KEY, load_settings


def test_defaults(monkeypatch):
    for name in ("SECRET_KEY", "DATABASE_URL", "CORS_ORIGINS", "LOG_LEVEL", "PORT"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.secret_key == DEFAULT_SECRET_KEY
    assert settings.database_url == ""
    assert settings.cors_origins == ["*"]
    assert settings.access_token_expire_minutes == 720
    assert settings.port == 8000


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "s3cret")
    monkeypatch.setenv("DATABASE_URL", "mongodb://db:27017")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example.com, https://b.example.com,")
    monkeypatch.setenv("APP_URL", "https://api.example.com/")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("TRANSACTION_ATTEMPTS", "3")
    settings = load_settings()
    assert settings.secret_key == "s3cret"
    assert settings.database_url == "mongodb://db:27017"
    assert settings.cors_origins == ["https://a.example.com", "https://b.example.com"]
    assert settings.app_url == "https://api.example.com"
    assert settings.log_level == "DEBUG"
    assert settings.transaction_attempts == 3


def test_setup_logging_is_idempotent():
    logger = setup_logging("WARNING")
    handlers = list(logger.handlers)
    assert setup_logging("DEBUG") is logger
    assert logger.handlers == handlers
    assert logger.name == "oodoo"
    assert logging.getLogger("pymongo").level == logging.WARNING
