from sqlalchemy.exc import OperationalError

from event_import.core.exceptions import (
    GeocodingError,
    NotFoundError,
    PipelineStageError,
    TransformError,
    ValidationError,
    error_type_name,
    sanitize_error_message,
)


def test_not_found_default_message():
    error = NotFoundError("Dataset", 42)
    assert str(error) == "Dataset 42 not found"
    assert error.resource == "Dataset"
    assert error.identifier == 42


def test_transform_error_serializes_row_context():
    error = TransformError(
        'Cannot parse "abc" as number',
        row_number=3,
        field="price",
        value="abc",
        transform_type="type-cast",
        rejects_row=True,
    )
    assert error.to_dict() == {
        "row": 3,
        "field": "price",
        "value": "abc",
        "transform": "type-cast",
        "error": 'Cannot parse "abc" as number',
        "rejected": True,
    }


def test_domain_messages_are_scrubbed():
    error = ValidationError("Could not read /srv/uploads/tenant/secret.csv from https://bucket.example.com/x?sig=1")
    message = sanitize_error_message(error)
    assert "/srv/uploads" not in message
    assert "bucket.example.com" not in message
    assert "<path>" in message
    assert "<url>" in message


def test_credentials_are_masked():
    message = sanitize_error_message(GeocodingError("Provider rejected api_key=abc123"))
    assert "abc123" not in message
    assert "api_key=***" in message


def test_domain_messages_are_truncated():
    assert len(sanitize_error_message(PipelineStageError("create-events", "x" * 2000))) == 500


def test_infrastructure_errors_become_generic():
    db_error = OperationalError("SELECT 1", {}, Exception("could not connect to server at 10.0.0.5"))
    assert sanitize_error_message(db_error) == "Database connection error"
    assert sanitize_error_message(TimeoutError("read timed out")) == "Operation timed out"
    assert sanitize_error_message(MemoryError()) == "Insufficient resources to complete the operation"
    assert sanitize_error_message(PermissionError("denied")) == "Permission denied"
    assert sanitize_error_message(FileNotFoundError("No such file or directory: '/tmp/x'")) == "Source file not found"
    assert sanitize_error_message(RuntimeError("HTTP 429 rate limit")) == "Rate limit exceeded"
    assert sanitize_error_message(KeyError("title")) == "Internal processing error"


def test_error_type_name_hides_internal_types():
    assert error_type_name(ValidationError("bad")) == "ValidationError"
    assert error_type_name(KeyError("x")) == "InternalError"
