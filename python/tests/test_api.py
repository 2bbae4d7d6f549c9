"""
API endpoint tests for the Sanctions & PEP Screening API

Runs the FastAPI app through TestClient with the module-level services
patched to in-memory components. Covers screening, PEP, scheduling, error
mapping, health and API key handling.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api import server
from audit_logger import AuditLogger
from config_manager import ConfigManager
from contracts import InMemoryListRepository, InMemoryPartyProvider, InMemoryScheduleStore
from database.connection import create_test_provider
from pep_screener import PepScreener
from scheduler import PeriodicScreeningScheduler
from screener import SanctionsScreener
from screening_models import Party, ScreeningFailedError


ENTRIES = {
    'ofac': [
        {'id': 'OFAC-1', 'name': 'Viktor Petrov', 'aliases': ['Victor Petroff'], 'program': 'UKRAINE-EO13660'},
    ],
    'un': [
        {'id': 'UN-1', 'name': 'Viktor Petrov'},
    ],
}
PEPS = [
    {
        'id': 'PEP-9',
        'name': 'Helena Brandt',
        'position': 'Governor of the Central Bank',
        'country': 'DE',
    },
]
RELATED = {
    'PEP-9': [
        {'id': 'PEP-10', 'name': 'Karl Brandt', 'relationship': 'child'},
    ],
}


@pytest.fixture
def config(tmp_path):
    return ConfigManager(config_path=str(tmp_path / "missing.yaml"))


@pytest.fixture
def services(config):
    """Screeners and scheduler over in-memory storage"""
    audit = AuditLogger(log_dir=None)
    repository = InMemoryListRepository(entries=ENTRIES, peps=PEPS, relationships=RELATED)
    screener = SanctionsScreener(repository, config=config, audit_logger=audit)
    pep_screener = PepScreener(repository, config=config, audit_logger=audit)
    parties = InMemoryPartyProvider([
        Party(id='P1', name='Viktor Petrov'),
        Party(id='P2', name='Jonathan Whitfield'),
    ])
    scheduler = PeriodicScreeningScheduler(
        InMemoryScheduleStore(), screener, parties, pep_screener=pep_screener,
        config=config, audit_logger=audit
    )
    return screener, pep_screener, scheduler


@pytest.fixture
def client(services, config):
    """Create test client with patched services."""
    screener, pep_screener, scheduler = services
    with patch.object(server, '_screener', screener):
        with patch.object(server, '_pep_screener', pep_screener):
            with patch.object(server, '_scheduler', scheduler):
                with patch.object(server, '_config', config):
                    with patch.object(server, '_db_provider', None):
                        with patch.object(server, '_startup_time', datetime.now(timezone.utc)):
                            yield TestClient(server.app)


@pytest.fixture
def db_provider():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    provider = create_test_provider(engine)
    provider.create_tables()
    yield provider
    provider.drop_tables()
    provider.close()


# ============================================
# SCREENING
# ============================================

class TestScreening:
    """Tests for sanctions screening endpoints"""

    def test_screen_match(self, client):
        response = client.post("/api/v1/screen", json={
            "party": {"id": "P1", "name": "Viktor Petrov"},
            "lists": ["ofac", "un"],
        })

        assert response.status_code == 200
        data = response.json()
        assert data["has_matches"] is True
        assert data["match_count"] == 2
        assert data["requires_blocking"] is True
        assert data["overall_risk_level"] == "CRITICAL"
        assert data["screening_id"].startswith("SCR-")
        assert {m["list_entry_id"] for m in data["matches"]} == {"OFAC-1", "UN-1"}
        assert data["metadata"]["lists_screened"] == ["ofac", "un"]

    def test_screen_clear(self, client):
        response = client.post("/api/v1/screen", json={
            "party": {"id": "P2", "name": "Jonathan Whitfield"},
        })

        assert response.status_code == 200
        data = response.json()
        assert data["has_matches"] is False
        assert data["matches"] == []
        assert data["metadata"]["lists_requested"] == ["ofac", "un", "eu", "uk_hmt"]

    def test_invalid_party(self, client):
        response = client.post("/api/v1/screen", json={"party": {"id": "P3", "name": ""}})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "INVALID_PARTY"
        assert error["field"] == "name"
        assert any(e.startswith("name:") for e in error["errors"])

    def test_missing_party_body(self, client):
        response = client.post("/api/v1/screen", json={})
        assert response.status_code == 422
        assert "detail" in response.json()

    def test_threshold_out_of_range(self, client):
        response = client.post("/api/v1/screen", json={
            "party": {"id": "P1", "name": "Viktor Petrov"},
            "options": {"similarity_threshold": 1.5},
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ARGUMENT_OUT_OF_RANGE"

    def test_unknown_list(self, client):
        response = client.post("/api/v1/screen", json={
            "party": {"id": "P1", "name": "Viktor Petrov"},
            "lists": ["atlantis"],
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_ARGUMENT"

    def test_screening_failure_hides_cause(self, client):
        failing = MagicMock()
        failing.screen.side_effect = ScreeningFailedError("P1", "connection refused by 10.0.0.5")

        with patch.object(server, '_screener', failing):
            response = client.post("/api/v1/screen", json={"party": {"id": "P1", "name": "Viktor Petrov"}})

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "SCREENING_FAILED"
        assert "10.0.0.5" not in error["message"]

    def test_batch_reports_failed_parties(self, client):
        response = client.post("/api/v1/screen/batch", json={
            "parties": [
                {"id": "P1", "name": "Viktor Petrov"},
                {"id": "P4", "name": ""},
            ],
            "lists": ["ofac"],
        })

        assert response.status_code == 200
        data = response.json()
        assert data["total_parties"] == 2
        assert data["screened"] == 1
        assert data["failed_party_ids"] == ["P4"]
        assert data["results"]["P1"]["match_count"] == 1

    def test_similarity(self, client):
        response = client.post("/api/v1/similarity", json={"name1": "John Smith", "name2": "John Smith"})
        assert response.status_code == 200
        assert response.json()["similarity"] == 1.0
        assert response.json()["match_strength"] == "exact"

        response = client.post("/api/v1/similarity", json={"name1": "John Smith", "name2": "Maria Garcia"})
        assert response.json()["match_strength"] is None


# ============================================
# PEP
# ============================================

class TestPep:
    """Tests for PEP endpoints"""

    def test_pep_screen(self, client):
        response = client.post("/api/v1/pep/screen", json={"party": {"id": "C1", "name": "Helena Brandt"}})

        assert response.status_code == 200
        data = response.json()
        assert data["is_pep"] is True
        assert data["pep_risk_level"] == "HIGH"
        assert data["requires_edd"] is True
        assert data["monitoring_frequency"] == "monthly"
        assert [p["pep_id"] for p in data["profiles"]] == ["PEP-9", "PEP-10"]

    def test_pep_screen_without_family(self, client):
        response = client.post("/api/v1/pep/screen", json={
            "party": {"id": "C1", "name": "Helena Brandt"},
            "options": {"include_family": False},
        })
        assert [p["pep_id"] for p in response.json()["profiles"]] == ["PEP-9"]

    def test_not_a_pep(self, client):
        response = client.post("/api/v1/pep/screen", json={"party": {"id": "C2", "name": "Jonathan Whitfield"}})

        data = response.json()
        assert data["is_pep"] is False
        assert data["pep_risk_level"] == "NONE"
        assert data["requires_edd"] is False

    def test_related_persons(self, client):
        response = client.post("/api/v1/pep/related", json={"party": {"id": "C1", "name": "Helena Brandt"}})

        assert response.status_code == 200
        data = response.json()
        assert data["related_count"] == 1
        assert data["related_persons"][0]["pep_id"] == "PEP-10"


# ============================================
# SCHEDULING
# ============================================

class TestSchedules:
    """Tests for scheduling endpoints"""

    def test_create_and_get_schedule(self, client):
        response = client.post("/api/v1/schedules", json={
            "party_id": "P1",
            "frequency": "monthly",
            "lists": ["ofac"],
            "metadata": {"source": "onboarding"},
        })

        assert response.status_code == 200
        created = response.json()
        assert created["status"] == "active"
        assert created["frequency"] == "monthly"
        assert created["lists"] == ["ofac"]

        response = client.get("/api/v1/schedules/P1")
        assert response.status_code == 200
        assert response.json()["schedule_id"] == created["schedule_id"]

    def test_unknown_schedule(self, client):
        response = client.get("/api/v1/schedules/P404")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "HTTP_404"

    def test_invalid_frequency(self, client):
        response = client.post("/api/v1/schedules", json={"party_id": "P1", "frequency": "hourly"})
        assert response.status_code == 400

    def test_immediate_screening_executes(self, client):
        response = client.post("/api/v1/schedules/immediate", json={"party_id": "P1", "reason": "adverse media"})
        assert response.status_code == 200
        assert response.json()["status"] == "pending_immediate"
        assert response.json()["metadata"]["reason"] == "adverse media"

        due = client.get("/api/v1/schedules/due").json()
        assert due["party_ids"] == ["P1"]

        summary = client.post("/api/v1/schedules/execute", json={}).json()
        assert summary["successful"] == 1
        assert summary["total_matches"] == 2

        stats = client.get("/api/v1/schedules/statistics").json()
        assert stats["total_executed"] == 1
        assert stats["total_successful"] == 1

    def test_batch_size_out_of_range(self, client):
        response = client.post("/api/v1/schedules/execute", json={"batch_size": 0})
        assert response.status_code == 400
        assert response.json()["error"]["field"] == "batch_size"

    def test_retry_without_failures(self, client):
        response = client.post("/api/v1/schedules/retry", json={})
        assert response.status_code == 200
        assert response.json()["total_retried"] == 0

    def test_bulk_schedule(self, client):
        response = client.post("/api/v1/schedules/bulk", json={
            "party_ids": ["P1", "P2"],
            "frequency": "weekly",
        })
        assert response.status_code == 200
        assert response.json()["successful"] == 2

    def test_update_frequency(self, client):
        client.post("/api/v1/schedules", json={"party_id": "P2", "frequency": "annual"})

        response = client.put("/api/v1/schedules/P2/frequency", json={"frequency": "quarterly"})
        assert response.status_code == 200
        assert response.json()["frequency"] == "quarterly"

    def test_update_frequency_without_schedule(self, client):
        response = client.put("/api/v1/schedules/P404/frequency", json={"frequency": "quarterly"})
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "SCREENING_FAILED"

    def test_cancel(self, client):
        client.post("/api/v1/schedules", json={"party_id": "P1", "frequency": "daily"})

        response = client.delete("/api/v1/schedules/P1", params={"reason": "offboarded"})
        assert response.status_code == 200
        assert response.json() == {"party_id": "P1", "cancelled": 1}

        assert client.get("/api/v1/schedules/P1").json()["status"] == "cancelled"


# ============================================
# PARTIES / HEALTH
# ============================================

class TestPartiesAndHealth:
    """Tests for party registration and health"""

    def test_health_without_database(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["database_connected"] is False
        assert data["default_lists"] == ["ofac", "un", "eu", "uk_hmt"]
        assert data["uptime_seconds"] >= 0

    def test_health_with_database(self, client, db_provider):
        with patch.object(server, '_db_provider', db_provider):
            data = client.get("/api/v1/health").json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True

    def test_party_upsert_requires_database(self, client):
        response = client.put("/api/v1/parties/P1", json={"id": "P1", "name": "Viktor Petrov"})
        assert response.status_code == 503

    def test_party_upsert(self, client, db_provider):
        with patch.object(server, '_db_provider', db_provider):
            response = client.put("/api/v1/parties/P7", json={
                "id": "P7", "name": "Acme Trading", "type": "organization",
            })
            mismatch = client.put("/api/v1/parties/P8", json={"id": "P7", "name": "Acme Trading"})
            invalid = client.put("/api/v1/parties/P9", json={"id": "P9", "name": "A"})

        assert response.status_code == 200
        assert response.json()["type"] == "organization"
        assert mismatch.status_code == 400
        assert invalid.status_code == 422

    def test_root(self, client):
        assert client.get("/").json()["health"] == "/api/v1/health"

    def test_request_id_echoed(self, client):
        response = client.get("/api/v1/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        assert "X-Processing-Time-MS" in response.headers


class TestApiKey:
    """Tests for API key enforcement"""

    def test_missing_key(self, client):
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/api/v1/similarity", json={"name1": "a", "name2": "b"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "HTTP_401"

    def test_wrong_key(self, client):
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/api/v1/similarity", json={"name1": "a", "name2": "b"},
                                   headers={"X-API-Key": "nope"})
        assert response.status_code == 403

    def test_valid_key(self, client):
        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/api/v1/similarity", json={"name1": "a", "name2": "b"},
                                   headers={"X-API-Key": "secret"})
        assert response.status_code == 200

    def test_health_is_public(self, client):
        with patch.object(server, 'API_KEY', 'secret'):
            assert client.get("/api/v1/health").status_code == 200


class TestAsgiTransport:
    """Screening through httpx.AsyncClient over the ASGI app"""

    @pytest.mark.asyncio
    async def test_screen_async(self, client):
        transport = ASGITransport(app=server.app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/v1/screen", json={
                "party": {"id": "P1", "name": "Victor Petroff"},
                "lists": ["ofac"],
            })

        assert response.status_code == 200
        assert response.json()["matches"][0]["list_entry_id"] == "OFAC-1"
