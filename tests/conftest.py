import pytest
from fastapi.testclient import TestClient

from database import MemoryDocumentStore
from main import create_app
from security import Authenticator
from settings import Settings


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send_verification_email(self, email, link):
        self.sent.append((email, link))


@pytest.fixture
def settings():
    return Settings(secret_key="test-secret", log_level="WARNING")


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def app(settings, store, mailer):
    return create_app(settings=settings, store=store, mailer=mailer)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def authenticator(settings):
    return Authenticator(settings)


@pytest.fixture
def auth_header(authenticator):
    def make(user_id):
        return {"Authorization": f"Bearer {authenticator.create_access_token(user_id)}"}
    return make
