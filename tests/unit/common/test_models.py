import base64
from datetime import date

import pytest
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from receipt_vault.common.models import (
    EVENT_TYPES,
    DateRange,
    DomainEvent,
    EmailAttachment,
    ExportPayload,
    Job,
    JobPayload,
    OCRPayload,
    QueueName,
    RetryPolicy,
)


class TestPayloads:

    def test_discriminated_union_picks_variant(self):
        """Test that the payload kind selects the right model."""
        adapter = TypeAdapter(JobPayload)
        payload = adapter.validate_python(
            {"kind": "ocr", "receipt_id": "r1", "file_path": "/tmp/r1.jpg", "user_id": "u1"}
        )
        assert isinstance(payload, OCRPayload)
        assert payload.company_id is None

    def test_unknown_kind_rejected(self):
        adapter = TypeAdapter(JobPayload)
        with pytest.raises(PydanticValidationError):
            adapter.validate_python({"kind": "fax", "receipt_id": "r1"})

    def test_attachment_requires_base64(self):
        """Test that attachment data must be valid base64."""
        with pytest.raises(PydanticValidationError):
            EmailAttachment(filename="a.pdf", content_type="application/pdf", data="not base64!")

    def test_attachment_content_decodes(self):
        data = base64.b64encode(b"%PDF-1.4").decode()
        attachment = EmailAttachment(filename="a.pdf", content_type="application/pdf", data=data)
        assert attachment.content() == b"%PDF-1.4"

    def test_date_range_order(self):
        """Test that a range ending before it starts is rejected."""
        with pytest.raises(PydanticValidationError):
            DateRange(start=date(2024, 2, 1), end=date(2024, 1, 1))

    @pytest.mark.parametrize("export_id", ["../escaped", "/abs/path", "a/b", ".hidden", ""])
    def test_export_id_must_be_a_plain_name(self, export_id):
        with pytest.raises(PydanticValidationError):
            ExportPayload(export_id=export_id, user_id="u1")

    def test_export_id_allows_dots_and_dashes(self):
        assert ExportPayload(export_id="exp-2024.01_a", user_id="u1").export_id == "exp-2024.01_a"

    def test_export_defaults_to_csv(self):
        payload = ExportPayload(export_id="e1", user_id="u1")
        assert payload.format.value == "csv"
        assert payload.filters == {}


class TestJob:

    def test_job_defaults(self):
        job = Job(
            queue_name=QueueName.OCR,
            payload=OCRPayload(receipt_id="r1", file_path="/tmp/r1.jpg", user_id="u1"),
            max_attempts=3,
        )
        assert job.state.value == "waiting"
        assert job.attempts == 0
        assert job.progress == 0
        assert job.id

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            Job(
                queue_name=QueueName.OCR,
                payload=OCRPayload(receipt_id="r1", file_path="/tmp/r1.jpg", user_id="u1"),
                max_attempts=0,
            )


class TestWebhookModels:

    def test_domain_event_is_frozen(self):
        event = DomainEvent(type="receipt.created", payload={"id": "r1"})
        with pytest.raises(PydanticValidationError):
            event.type = "receipt.deleted"

    def test_event_catalogue(self):
        assert "receipt.created" in EVENT_TYPES
        assert "receipt.ocr_completed" in EVENT_TYPES
        assert "export.completed" in EVENT_TYPES

    @pytest.mark.parametrize(
        "changes",
        [{"max_retries": 0}, {"max_retries": 11}, {"retry_delay_seconds": 0}, {"backoff_multiplier": 6}],
    )
    def test_retry_policy_bounds(self, changes):
        with pytest.raises(PydanticValidationError):
            RetryPolicy(**changes)
