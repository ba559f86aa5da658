"""
Media endpoint tests.

Tests for:
- Registration (with and without immediate processing)
- Error body format for rejected uploads (type, size, upload and storage limits)
- Listing, detail, process, retry and delete
- Ownership: another user's media is a 404
"""

import pytest
from httpx import AsyncClient

from app.core.config import settings
from app.models.jobs import Capability
from app.models.media import MediaStatus
from app.models.user import User


def upload_body(**overrides) -> dict:
    body = {
        "locator": "uploads/1/2024/05/beach.jpg",
        "filename": "beach.jpg",
        "mime_type": "image/jpeg",
        "size_bytes": 204800,
    }
    body.update(overrides)
    return body


# ================================
# Registration Tests
# ================================

@pytest.mark.asyncio
class TestRegisterMedia:
    """Test POST /api/v1/media."""

    async def test_register_and_queue(self, client: AsyncClient, auth_headers: dict, woken_capabilities):
        """Default registration enqueues the plan and wakes the workers."""
        response = await client.post("/api/v1/media", json=upload_body(), headers=auth_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["kind"] == "image"
        assert data["status"] == "queued"
        assert sorted(job["capability"] for job in data["jobs"]) == [
            "object_detection",
            "text_analysis",
            "text_detection",
        ]
        assert all(job["status"] == "pending" and job["priority"] == 10 for job in data["jobs"])
        assert set(woken_capabilities) == {
            Capability.OBJECT_DETECTION,
            Capability.TEXT_DETECTION,
            Capability.TEXT_ANALYSIS,
        }

    async def test_register_without_processing(self, client: AsyncClient, auth_headers: dict, woken_capabilities):
        response = await client.post("/api/v1/media", json=upload_body(process=False), headers=auth_headers)

        assert response.status_code == 201
        assert response.json()["status"] == "uploaded"
        assert response.json()["jobs"] == []
        assert woken_capabilities == []

    async def test_unsupported_type(self, client: AsyncClient, auth_headers: dict):
        """Rejected uploads carry a stable error code."""
        response = await client.post(
            "/api/v1/media",
            json=upload_body(mime_type="application/pdf", filename="report.pdf"),
            headers=auth_headers,
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "unsupported_format"
        assert error["retryable"] is False

    async def test_file_too_large(self, client: AsyncClient, auth_headers: dict):
        response = await client.post(
            "/api/v1/media",
            json=upload_body(size_bytes=settings.MAX_FILE_SIZE_BYTES + 1),
            headers=auth_headers,
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "file_too_large"

    async def test_upload_limit(self, client: AsyncClient, auth_headers: dict, monkeypatch):
        monkeypatch.setattr(settings, "TIER_UPLOADS_FREE", 1)

        first = await client.post("/api/v1/media", json=upload_body(), headers=auth_headers)
        second = await client.post("/api/v1/media", json=upload_body(), headers=auth_headers)

        assert first.status_code == 201
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "upload_limit_exceeded"

    async def test_storage_limit(self, client: AsyncClient, auth_headers: dict, monkeypatch):
        """An upload that would pass the tier's storage allowance is refused."""
        monkeypatch.setattr(settings, "TIER_STORAGE_FREE_MB", 1)

        first = await client.post("/api/v1/media", json=upload_body(size_bytes=700 * 1024), headers=auth_headers)
        second = await client.post("/api/v1/media", json=upload_body(size_bytes=400 * 1024), headers=auth_headers)

        assert first.status_code == 201
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "storage_limit_exceeded"


    async def test_register_requires_auth(self, client: AsyncClient):
        response = await client.post("/api/v1/media", json=upload_body())

        assert response.status_code == 401


# ================================
# Query Tests
# ================================

@pytest.mark.asyncio
class TestQueryMedia:
    """Test listing and detail."""

    async def test_list(self, client: AsyncClient, auth_headers: dict, media_factory, test_user: User):
        await media_factory(test_user)
        await media_factory(test_user, status=MediaStatus.COMPLETED)
        await media_factory(test_user, status=MediaStatus.DELETED)

        response = await client.get("/api/v1/media", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["total"] == 2

        response = await client.get("/api/v1/media?status=completed", headers=auth_headers)
        assert [item["status"] for item in response.json()["items"]] == ["completed"]

    async def test_detail_with_tags(self, client: AsyncClient, auth_headers: dict, media_factory, test_user: User):
        media = await media_factory(test_user, status=MediaStatus.COMPLETED, tags=["dog", "beach"])

        response = await client.get(f"/api/v1/media/{media.id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["tags"] == ["beach", "dog"]

    async def test_missing(self, client: AsyncClient, auth_headers: dict):
        response = await client.get("/api/v1/media/999999", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "media_not_found"

    async def test_other_users_media(self, client: AsyncClient, auth_headers: dict, media_factory, user_factory):
        stranger = await user_factory()
        media = await media_factory(stranger)

        response = await client.get(f"/api/v1/media/{media.id}", headers=auth_headers)

        assert response.status_code == 404


# ================================
# Pipeline Endpoint Tests
# ================================

@pytest.mark.asyncio
class TestPipelineEndpoints:
    """Test process, retry and delete."""

    async def test_process(self, client: AsyncClient, auth_headers: dict, media_factory, test_user, woken_capabilities):
        media = await media_factory(test_user)

        response = await client.post(f"/api/v1/media/{media.id}/process", headers=auth_headers)

        assert response.status_code == 202
        assert len(response.json()["job_ids"]) == 3
        assert woken_capabilities

    async def test_process_twice_conflicts(self, client: AsyncClient, auth_headers: dict, media_factory, test_user):
        media = await media_factory(test_user)
        await client.post(f"/api/v1/media/{media.id}/process", headers=auth_headers)

        response = await client.post(f"/api/v1/media/{media.id}/process", headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "invalid_media"

    async def test_retry_not_failed(self, client: AsyncClient, auth_headers: dict, media_factory, test_user):
        media = await media_factory(test_user, status=MediaStatus.COMPLETED)

        response = await client.post(f"/api/v1/media/{media.id}/retry", headers=auth_headers)

        assert response.status_code == 409

    async def test_delete(self, client: AsyncClient, auth_headers: dict, media_factory, test_user):
        media = await media_factory(test_user)

        response = await client.delete(f"/api/v1/media/{media.id}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["success"] is True

        response = await client.get(f"/api/v1/media/{media.id}", headers=auth_headers)
        assert response.status_code == 404
