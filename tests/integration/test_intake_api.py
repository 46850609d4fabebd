"""Intake, status and health endpoints with in-memory collaborators."""

from __future__ import annotations

from dataclasses import replace

import msgspec
import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_orchestration_service
from app.core.signature import SignatureVerificationError, SigningKeyUnavailableError
from app.jobs.errors import DiscoveryError
from app.main import app
from app.services.orchestration import OrchestrationService


class FakeDiscovery:
  def __init__(self, entity_ids: list[str] | None = None, error: Exception | None = None) -> None:
    self.entity_ids = entity_ids or []
    self.error = error
    self.calls: list[dict] = []

  async def discover(self, *, api_base: str, network: str | None, target: str, entity_type: str | None = None) -> list[str]:
    self.calls.append({"api_base": api_base, "network": network, "target": target, "entity_type": entity_type})
    if self.error is not None:
      raise self.error
    return list(self.entity_ids)


class FakeVerifier:
  def __init__(self, error: Exception | None = None) -> None:
    self.error = error
    self.seen: list[tuple[bytes, str | None]] = []

  async def verify(self, body: bytes, header: str | None) -> None:
    self.seen.append((body, header))
    if self.error is not None:
      raise self.error


def _intake_body(job_id: str = "job-1", **overrides) -> bytes:
  body = {
    "job_id": job_id,
    "target": "collection-1",
    "job_collection": "job-collection-1",
    "api_base": "https://platform.test",
    "expires_at": "2026-01-01T13:00:00Z",
    "network": "testnet",
    "log": {"pi": "log-file-1", "type": "file"},
    "input": {"entity_ids": ["e1", "e2", "e1"], "options": {"concurrency": 2}},
  }
  body.update(overrides)
  return msgspec.json.encode(body)


@pytest.fixture
def wire(settings, repo, enqueuer, clock):
  """Install an OrchestrationService built from test doubles and return a TestClient factory."""

  def _wire(*, discovery: FakeDiscovery | None = None, verifier: FakeVerifier | None = None, verify_signatures: bool = False) -> TestClient:
    service = OrchestrationService(
      settings=replace(settings, verify_signatures=verify_signatures),
      repo=repo,
      discovery=discovery or FakeDiscovery(),
      enqueuer=enqueuer,
      verifier=verifier,
      clock=clock,
    )
    app.dependency_overrides[get_orchestration_service] = lambda: service
    return TestClient(app)

  yield _wire
  app.dependency_overrides.clear()


def test_intake_creates_job_and_schedules_first_tick(wire, repo, enqueuer, clock) -> None:
  client = wire()

  response = client.post("/process", content=_intake_body())

  assert response.status_code == 202
  assert response.json() == {"job_id": "job-1", "accepted": True}
  assert enqueuer.ticks == [("job-1", 0.0)]
  record = repo.rows["job-1"]["record"]
  assert list(record["entities"]) == ["e1", "e2"]
  assert record["config"]["concurrency"] == 2
  assert record["log_target"] == "log-file-1"
  assert record["network"] == "testnet"
  assert record["expires_at"] == "2026-01-01T13:00:00.000Z"
  assert record["next_tick_at"] == record["started_at"]


def test_duplicate_intake_is_accepted_without_side_effects(wire, repo, enqueuer) -> None:
  client = wire()
  first = client.post("/process", content=_intake_body())
  before = dict(repo.rows["job-1"]["record"])

  second = client.post("/process", content=_intake_body(input={"entity_ids": ["other"]}))

  assert first.status_code == second.status_code == 202
  assert second.json() == {"job_id": "job-1", "accepted": True}
  assert repo.rows["job-1"]["record"] == before
  assert enqueuer.ticks == [("job-1", 0.0)]


def test_intake_discovers_entities_when_none_supplied(wire, repo) -> None:
  discovery = FakeDiscovery(entity_ids=["d1", "d2", "d3"])
  client = wire(discovery=discovery)

  response = client.post("/process", content=_intake_body(input={"options": {"discover_type": "document"}}))

  assert response.status_code == 202
  assert list(repo.rows["job-1"]["record"]["entities"]) == ["d1", "d2", "d3"]
  assert discovery.calls == [{"api_base": "https://platform.test", "network": "testnet", "target": "collection-1", "entity_type": "document"}]


def test_intake_rejects_empty_collection(wire, repo, enqueuer) -> None:
  client = wire(discovery=FakeDiscovery(entity_ids=[]))

  response = client.post("/process", content=_intake_body(input=None))

  assert response.status_code == 400
  assert response.json() == {"accepted": False, "error": "No entities found in collection"}
  assert repo.rows == {}
  assert enqueuer.ticks == []


def test_intake_discovery_outage_is_retryable(wire, repo) -> None:
  client = wire(discovery=FakeDiscovery(error=DiscoveryError("Discovery failed: HTTP 502")))

  response = client.post("/process", content=_intake_body(input=None))

  assert response.status_code == 503
  assert response.json()["accepted"] is False
  assert response.json()["retry_after"] == 30
  assert response.headers["retry-after"] == "30"
  assert repo.rows == {}


@pytest.mark.parametrize(
  "content",
  [
    b"not json",
    msgspec.json.encode({"job_id": "job-1"}),
    _intake_body(target="  "),
    _intake_body(expires_at="tomorrow"),
    _intake_body(input={"entity_ids": ["e1"], "options": {"max_retries": 0}}),
    _intake_body(input={"entity_ids": ["e1"], "options": {"concurrency": "lots"}}),
    _intake_body(api_base="https://platform.test:notaport"),
    _intake_body(api_base="platform.test/v1"),
    _intake_body(api_base="ftp://platform.test", input=None),
  ],
)
def test_intake_rejects_invalid_requests(wire, repo, content) -> None:
  client = wire()

  response = client.post("/process", content=content)

  assert response.status_code == 400
  assert response.json()["accepted"] is False
  assert response.json()["error"]
  assert repo.rows == {}


def test_intake_rejects_bad_signature(wire, repo) -> None:
  verifier = FakeVerifier(error=SignatureVerificationError("Signature verification failed"))
  client = wire(verifier=verifier, verify_signatures=True)
  body = _intake_body()

  response = client.post("/process", content=body, headers={"X-Platform-Signature": "t=1,v1=abcd"})

  assert response.status_code == 401
  assert response.json() == {"accepted": False, "error": "Signature verification failed"}
  assert verifier.seen == [(body, "t=1,v1=abcd")]
  assert repo.rows == {}


def test_intake_signing_key_outage_is_retryable(wire) -> None:
  client = wire(verifier=FakeVerifier(error=SigningKeyUnavailableError("HTTP 500")), verify_signatures=True)

  response = client.post("/process", content=_intake_body(), headers={"X-Platform-Signature": "t=1,v1=abcd"})

  assert response.status_code == 503
  assert response.json()["error"] == "Signing key unavailable"


def test_intake_with_valid_signature_is_accepted(wire, repo) -> None:
  client = wire(verifier=FakeVerifier(), verify_signatures=True)

  response = client.post("/process", content=_intake_body(), headers={"X-Platform-Signature": "t=1,v1=abcd"})

  assert response.status_code == 202
  assert "job-1" in repo.rows


def test_status_reports_progress(wire) -> None:
  client = wire()
  client.post("/process", content=_intake_body())

  response = client.get("/status/job-1")

  assert response.status_code == 200
  body = response.json()
  assert body["job_id"] == "job-1"
  assert body["status"] == "pending"
  assert body["progress"] == {"total": 2, "pending": 2, "dispatched": 0, "done": 0, "error": 0}
  assert "result" not in body
  assert "completed_at" not in body


def test_status_unknown_job_is_404(wire) -> None:
  client = wire()

  response = client.get("/status/missing")

  assert response.status_code == 404
  assert response.json()["detail"] == "Job not found"
  assert response.json()["requestId"] == response.headers["x-request-id"]


def test_health(settings) -> None:
  client = TestClient(app)

  response = client.get("/health")

  assert response.status_code == 200
  assert response.json() == {"status": "ok", "type": "orchestrator", "description": "Parallel entity processing orchestrator", "agent_id": settings.agent_id, "version": settings.agent_version}
