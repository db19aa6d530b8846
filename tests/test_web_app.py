"""Tests for the FastAPI app: scrape endpoint, streaming and error mapping."""

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from schoolyard.config import CrawlerConfig
from schoolyard.driver.channels import BufferedChannel
from schoolyard.web.app import create_app
from tests.mock_server import DirectoryState


@pytest.fixture
def client(
    config: CrawlerConfig, tmp_path: Path
) -> Generator[TestClient, None, None]:
    """TestClient with the lifespan (and so the orchestrator) running."""
    app = create_app(config, db_path=tmp_path / "web.db")
    with TestClient(app) as test_client:
        yield test_client


class TestScrapeEndpoint:
    """Tests for POST /scrape."""

    def test_scrape(self, client: TestClient, directory: DirectoryState) -> None:
        """POST /scrape shall return the division's schools and count."""
        response = client.post("/scrape", json={"divisionCode": 98})

        assert response.status_code == 200
        data = response.json()
        assert data["divisionCode"] == 98
        assert data["count"] == 5
        assert len(data["schools"]) == 5
        assert set(data["schools"][0]) == {
            "name",
            "division",
            "gradeSpan",
            "address",
            "divisionCode",
        }

    def test_second_scrape_uses_cache(
        self, client: TestClient, directory: DirectoryState
    ) -> None:
        """A repeated scrape shall be answered from the cache."""
        client.post("/scrape", json={"divisionCode": 7})
        response = client.post("/scrape", json={"divisionCode": 7})

        assert response.json()["count"] == 2
        assert directory.detail_hits() == 2

    def test_force_refresh(
        self, client: TestClient, directory: DirectoryState
    ) -> None:
        """forceRefresh shall crawl even when the cache is fresh."""
        client.post("/scrape", json={"divisionCode": 7})
        response = client.post(
            "/scrape", json={"divisionCode": 7, "forceRefresh": True}
        )

        assert response.status_code == 200
        assert directory.detail_hits() == 4

    def test_missing_division_code(self, client: TestClient) -> None:
        """A body without divisionCode shall be rejected with 422."""
        response = client.post("/scrape", json={})

        assert response.status_code == 422

    def test_seed_failure_maps_to_502(
        self, client: TestClient, directory: DirectoryState
    ) -> None:
        """A failed crawl shall answer 502 with the division code."""
        directory.fail("/virginia-schools", 10)

        response = client.post("/scrape", json={"divisionCode": 98})

        assert response.status_code == 502
        assert response.json()["divisionCode"] == 98

    def test_running_job_maps_to_409(
        self, client: TestClient, directory: DirectoryState
    ) -> None:
        """A scrape of a division already being crawled shall answer 409."""
        registry = client.app.state.orchestrator.registry
        client.portal.call(registry.start_job, 98, BufferedChannel())

        response = client.post("/scrape", json={"divisionCode": 98})

        assert response.status_code == 409
        assert response.json()["divisionCode"] == 98


class TestStreamEndpoint:
    """Tests for GET /divisions/{code}/schools."""

    def test_stream(self, client: TestClient) -> None:
        """The endpoint shall stream the JSON array of records."""
        response = client.get("/divisions/98/schools")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"
        schools = response.json()
        assert len(schools) == 5
        assert {s["divisionCode"] for s in schools} == {98}

    def test_stream_seed_failure(
        self, client: TestClient, directory: DirectoryState
    ) -> None:
        """A failed crawl shall answer 502 before any body is sent."""
        directory.fail("/virginia-schools", 10)

        response = client.get("/divisions/7/schools")

        assert response.status_code == 502

    def test_stream_force_refresh(
        self, client: TestClient, directory: DirectoryState
    ) -> None:
        """force_refresh shall bypass the cache for streamed scrapes too."""
        client.get("/divisions/7/schools")
        client.get("/divisions/7/schools", params={"force_refresh": "true"})

        assert directory.detail_hits() == 4
