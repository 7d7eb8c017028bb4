import asyncio

import pytest

from receipt_vault.common.models import QueueName


def run(coro):
    return asyncio.run(coro)


def process(services, queue_name):
    """Run one job to its outcome and wait for any events it emitted."""

    async def _process():
        job = await services.worker_pool.process_one(queue_name)
        await services.event_bus.drain()
        return job

    return run(_process())


@pytest.fixture
def failed_job(services, tmp_path):
    """Fixture that provides the id of an OCR job that failed on a missing file."""
    job_id = run(
        services.task_queue.enqueue(
            QueueName.OCR,
            {"receipt_id": "r-404", "file_path": str(tmp_path / "missing.jpg"), "user_id": "u1"},
        )
    )
    process(services, QueueName.OCR)
    return job_id


class TestJobStatus:

    def test_completed_job(self, api_client, services, ocr_payload):
        """Test that a finished job reports its result in the status view."""
        job_id = run(services.task_queue.enqueue(QueueName.OCR, ocr_payload))
        process(services, QueueName.OCR)

        response = api_client.get(f"/jobs/status/ocr/{job_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == job_id
        assert data["name"] == "process-receipt-ocr"
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["attemptsMade"] == 1
        assert data["data"]["receipt_id"] == "receipt-1"
        assert "kind" not in data["data"]
        assert data["returnvalue"]["extracted_data"]["vendor"] == "ACME Store"
        assert isinstance(data["processedOn"], int)
        assert isinstance(data["finishedOn"], int)

    def test_waiting_job(self, api_client, services):
        job_id = run(
            services.task_queue.enqueue(
                QueueName.EXPORT, {"export_id": "exp-1", "user_id": "u1", "format": "json"}
            )
        )
        data = api_client.get(f"/jobs/status/export/{job_id}").json()
        assert data["status"] == "waiting"
        assert data["processedOn"] is None
        assert data["name"] == "generate-export"

    def test_unknown_job(self, api_client):
        response = api_client.get("/jobs/status/ocr/nope")
        assert response.status_code == 404

    def test_job_on_other_queue(self, api_client, services, ocr_payload):
        job_id = run(services.task_queue.enqueue(QueueName.OCR, ocr_payload))
        assert api_client.get(f"/jobs/status/email/{job_id}").status_code == 404

    def test_unknown_queue(self, api_client):
        response = api_client.get("/jobs/status/fax/123")
        assert response.status_code == 400
        assert "Unknown queue" in response.json()["error"]


class TestQueueStats:

    def test_stats(self, api_client, services, ocr_payload, failed_job):
        run(services.task_queue.enqueue(QueueName.OCR, ocr_payload))
        run(services.task_queue.enqueue(QueueName.EMAIL, {"email_id": "m1", "user_id": "u1"}))

        response = api_client.get("/jobs/stats")

        assert response.status_code == 200
        assert response.json() == {
            "ocr": {"waiting": 1, "active": 0, "completed": 0, "failed": 1},
            "email": {"waiting": 1, "active": 0, "completed": 0, "failed": 0},
            "export": {"waiting": 0, "active": 0, "completed": 0, "failed": 0},
        }


class TestRetry:

    def test_retry_failed_job(self, api_client, services, failed_job):
        response = api_client.post(f"/jobs/retry/ocr/{failed_job}")

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Job queued for retry"}
        job = run(services.task_queue.get_job(failed_job))
        assert job.state.value == "waiting"
        assert job.attempts == 0

    def test_retry_job_that_has_not_failed(self, api_client, services, ocr_payload):
        job_id = run(services.task_queue.enqueue(QueueName.OCR, ocr_payload))
        response = api_client.post(f"/jobs/retry/ocr/{job_id}")
        assert response.status_code == 404

    def test_retry_unknown_job(self, api_client):
        assert api_client.post("/jobs/retry/ocr/nope").status_code == 404


class TestCleanupAndDeadLetter:

    def test_dead_letter_lists_failed_jobs(self, api_client, failed_job):
        response = api_client.get("/jobs/dead-letter/ocr")

        assert response.status_code == 200
        data = response.json()
        assert data["queue"] == "ocr"
        assert [job["id"] for job in data["jobs"]] == [failed_job]
        assert "not found" in data["jobs"][0]["failure_reason"]
        assert data["archived"] == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}

    def test_cleanup_archives_old_jobs(self, api_client, clock, failed_job):
        """Test that cleanup moves old failures into the archived counts."""
        clock.advance(2 * 3600)

        response = api_client.post("/jobs/cleanup", params={"retentionHours": 1})

        assert response.status_code == 200
        assert response.json()["removed"] == {"ocr": 1, "email": 0, "export": 0}
        dead_letter = api_client.get("/jobs/dead-letter/ocr").json()
        assert [job["id"] for job in dead_letter["jobs"]] == [failed_job]
        assert dead_letter["archived"]["failed"] == 1

    def test_cleanup_rejects_bad_retention(self, api_client):
        response = api_client.post("/jobs/cleanup", params={"retentionHours": -5})
        assert response.status_code == 400
