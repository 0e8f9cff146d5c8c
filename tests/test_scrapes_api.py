from __future__ import annotations

import base64
import os
from typing import Any

import pytest
from fastapi.testclient import TestClient

import auction_scraper.core.security as security
from auction_scraper.api.main import app
from auction_scraper.core.config import Settings, get_settings
from auction_scraper.core.crypto import encrypt_credentials
from auction_scraper.schemas.credentials import Credentials
from auction_scraper.schemas.jobs import JobStatus, ScrapeJobRecord
from auction_scraper.services.queue import get_queue
from auction_scraper.services.repository import RepositoryNotFoundError, UserCredentialsRecord, get_repository

KEY = base64.b64encode(os.urandom(32)).decode("ascii")


class FakeRepository:
    def __init__(self, creds: Any, encrypted: bool = False) -> None:
        self.creds = creds
        self.encrypted = encrypted
        self.created: list[dict[str, str]] = []

    async def get_user_credentials(self, user_id: str) -> UserCredentialsRecord | None:
        if self.creds is None:
            return None
        return UserCredentialsRecord(user_id=user_id, creds=self.creds, creds_encrypted=self.encrypted)

    async def create_job(self, *, user_id: str, url: str) -> str:
        self.created.append({"user_id": user_id, "url": url})
        return f"job-{len(self.created)}"

    async def get_job(self, job_id: str) -> ScrapeJobRecord:
        for index, job in enumerate(self.created, start=1):
            if f"job-{index}" == job_id:
                return ScrapeJobRecord(id=job_id, url=job["url"], user_id=job["user_id"], status=JobStatus.PENDING)
        raise RepositoryNotFoundError("job not found")


class FakeQueue:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def send(self, queue_name: str, payload: dict[str, Any], delay_seconds: int = 0) -> int:
        self.sent.append((queue_name, payload))
        return len(self.sent)


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def make_client(monkeypatch: pytest.MonkeyPatch, fake_queue: FakeQueue):
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return {"id": "user-1", "email": "agent@example.com"}

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)
    settings = Settings(
        supabase_url="https://example.supabase.co",
        supabase_anon_key="anon-key",
        credentials_encryption_key=KEY,
    )

    def _make(repository: FakeRepository) -> TestClient:
        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_repository] = lambda: repository
        app.dependency_overrides[get_queue] = lambda: fake_queue
        return TestClient(app)

    yield _make
    app.dependency_overrides.clear()


AUTH = {"Authorization": "Bearer token"}


def test_submit_queues_job_for_configured_user(make_client, fake_queue: FakeQueue) -> None:
    blob = encrypt_credentials(
        Credentials(username="agent", password="pw", target_url="https://auction.example/list"),
        KEY,
    )
    repository = FakeRepository(blob, encrypted=True)

    response = make_client(repository).post("/scrapes", headers=AUTH)

    assert response.status_code == 202
    assert response.json() == {"jobId": "job-1", "status": "QUEUED"}
    assert repository.created == [{"user_id": "user-1", "url": "https://auction.example/list"}]
    assert fake_queue.sent == [
        ("scrape_jobs", {"jobId": "job-1", "userId": "user-1", "url": "https://auction.example/list"})
    ]


def test_submit_requires_bearer_token(make_client, fake_queue: FakeQueue) -> None:
    response = make_client(FakeRepository({})).post("/scrapes")

    assert response.status_code == 401
    assert fake_queue.sent == []


def test_submit_without_credentials_is_rejected(make_client, fake_queue: FakeQueue) -> None:
    response = make_client(FakeRepository(None)).post("/scrapes", headers=AUTH)

    assert response.status_code == 400
    assert response.json()["detail"] == "Please configure your credentials in Settings first."
    assert fake_queue.sent == []


def test_submit_without_target_url_is_rejected(make_client, fake_queue: FakeQueue) -> None:
    repository = FakeRepository({"username": "agent", "password": "pw"})

    response = make_client(repository).post("/scrapes", headers=AUTH)

    assert response.status_code == 400
    assert response.json()["detail"] == "Please configure your Target URL in Settings first."
    assert repository.created == []


def test_submit_with_unreadable_credentials_is_rejected(make_client, fake_queue: FakeQueue) -> None:
    other_key = base64.b64encode(os.urandom(32)).decode("ascii")
    blob = encrypt_credentials(Credentials(username="agent", password="pw", target_url="https://x"), other_key)

    response = make_client(FakeRepository(blob, encrypted=True)).post("/scrapes", headers=AUTH)

    assert response.status_code == 400
    assert fake_queue.sent == []


def test_owner_can_read_job_status(make_client) -> None:
    repository = FakeRepository({"username": "agent", "password": "pw"})
    repository.created.append({"user_id": "user-1", "url": "https://auction.example/list"})
    repository.created.append({"user_id": "user-2", "url": "https://auction.example/other"})
    client = make_client(repository)

    own = client.get("/scrapes/job-1", headers=AUTH)
    foreign = client.get("/scrapes/job-2", headers=AUTH)
    missing = client.get("/scrapes/job-9", headers=AUTH)

    assert own.status_code == 200
    assert own.json()["status"] == "PENDING"
    assert own.json()["url"] == "https://auction.example/list"
    assert foreign.status_code == 404
    assert missing.status_code == 404


def test_token_without_user_id_is_rejected(make_client, fake_queue: FakeQueue, monkeypatch: pytest.MonkeyPatch) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return {"email": "agent@example.com"}

    client = make_client(FakeRepository({"username": "agent", "password": "pw", "targetUrl": "https://x"}))
    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)

    response = client.post("/scrapes", headers=AUTH)

    assert response.status_code == 401
    assert fake_queue.sent == []
