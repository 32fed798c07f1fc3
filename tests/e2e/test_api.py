import asyncio
import io

import pytest
from PIL import Image

from tests.fakes import make_image_bytes

TERMINAL = ("COMPLETED", "FAILED")


async def upload(client, content: bytes, filename="cat.png", content_type="image/png"):
    return await client.post(
        "/api/v1/enhance",
        files={"image": (filename, content, content_type)}
    )


async def wait_for_terminal(client, job_id: str, attempts: int = 200):
    seen = []
    for _ in range(attempts):
        response = await client.get(f"/api/v1/status/{job_id}")
        assert response.status_code == 200
        data = response.json()
        seen.append(data["progress"])
        if data["status"] in TERMINAL:
            return data, seen
        await asyncio.sleep(0.02)
    raise AssertionError(f"job {job_id} did not finish")


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_api_health(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "OK"
    assert data["timestamp"].endswith("Z")


@pytest.mark.asyncio
async def test_ready(client):
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json()["ready"] is True


@pytest.mark.asyncio
async def test_upload_and_download(client):
    response = await upload(client, make_image_bytes(64, 48))
    assert response.status_code == 202
    submitted = response.json()
    assert submitted["status"] == "QUEUED"
    job_id = submitted["job_id"]
    assert submitted["status_url"] == f"/api/v1/status/{job_id}"

    final, seen = await wait_for_terminal(client, job_id)
    assert final["status"] == "COMPLETED"
    assert final["progress"] == 100
    assert seen == sorted(seen)
    assert [artifact["label"] for artifact in final["artifacts"]] == ["4K", "8K"]

    response = await client.get(f"/api/v1/enhance/{job_id}/artifacts/8K")
    assert response.status_code == 200
    artifact = response.json()
    assert artifact["storage_key"] == final["artifacts"][1]["storage_key"]
    assert artifact["target_width"] == 768

    response = await client.get(artifact["download_url"])
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/jpeg"
    image = Image.open(io.BytesIO(response.content))
    assert image.size == (768, 576)


@pytest.mark.asyncio
async def test_download_of_deleted_derivative_is_not_found(client):
    from imagelift.main import app

    response = await upload(client, make_image_bytes())
    job_id = response.json()["job_id"]
    final, _ = await wait_for_terminal(client, job_id)
    assert final["status"] == "COMPLETED"
    await app.state.storage.delete(final["artifacts"][0]["storage_key"])

    response = await client.get(f"/api/v1/enhance/{job_id}/download/4K")
    assert response.status_code == 404
    data = response.json()
    assert "File not found" in data["error"]
    assert data["stage"] == "4K"


@pytest.mark.asyncio
async def test_corrupt_image_fails_job(client):
    response = await upload(client, b"not really a png")
    assert response.status_code == 202

    final, _ = await wait_for_terminal(client, response.json()["job_id"])
    assert final["status"] == "FAILED"
    assert final["error_code"] == "RENDER_ERROR"
    assert final["error"].startswith("4K stage failed:")
    assert final["artifacts"] is None


@pytest.mark.asyncio
async def test_invalid_content_type(client):
    response = await upload(client, b"hello", filename="notes.txt", content_type="text/plain")
    assert response.status_code == 400
    assert "Invalid file type" in response.json()["error"]


@pytest.mark.asyncio
async def test_unknown_job_status(client):
    response = await client.get("/api/v1/status/does-not-exist")
    assert response.status_code == 404
    assert response.json()["job_id"] == "does-not-exist"


@pytest.mark.asyncio
async def test_unknown_label(client):
    response = await upload(client, make_image_bytes())
    job_id = response.json()["job_id"]
    await wait_for_terminal(client, job_id)

    response = await client.get(f"/api/v1/enhance/{job_id}/artifacts/16K")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_artifact_of_failed_job_is_not_ready(client):
    response = await upload(client, b"broken")
    job_id = response.json()["job_id"]
    await wait_for_terminal(client, job_id)

    response = await client.get(f"/api/v1/enhance/{job_id}/artifacts/4K")
    assert response.status_code == 409
    assert response.json()["details"]["status"] == "FAILED"


@pytest.mark.asyncio
async def test_list_jobs(client):
    response = await upload(client, make_image_bytes())
    job_id = response.json()["job_id"]
    await wait_for_terminal(client, job_id)

    response = await client.get("/api/v1/status", params={"status": "COMPLETED"})
    assert response.status_code == 200
    data = response.json()
    assert data["total"] >= 1
    assert all(job["status"] == "COMPLETED" for job in data["jobs"])


@pytest.mark.asyncio
async def test_metrics_exposed(client):
    response = await upload(client, make_image_bytes())
    await wait_for_terminal(client, response.json()["job_id"])

    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "imagelift_jobs_total" in response.text
