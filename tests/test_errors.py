"""
Unit tests for the error hierarchy.

Tests base error context, status codes and the specific pipeline errors.
"""

from cardmerge.errors import (
    BatchCancelledError, CardMergeError, ConfigurationError, ConversionError,
    ConversionFailedError, DatasetNotFoundError, ImageResolutionError,
    LayoutDegenerateError, NotFoundError, StoredFileNotFoundError,
    TemplateImageMissingError, TemplateNotFoundError, ValidationError,
    ValidationInconclusiveError
)


class TestCardMergeError:
    """Test the base CardMergeError class."""

    def test_basic_error_creation(self):
        """Test creating a basic error with message only."""
        error = CardMergeError("Test error message")

        assert str(error) == "Test error message"
        assert error.message == "Test error message"
        assert error.details == {}
        assert error.suggestions == []
        assert error.status_code == 500

    def test_error_to_dict(self):
        """Test converting error to dictionary."""
        error = CardMergeError("Test", details={'key': 'value'}, suggestions=['suggestion'])

        result = error.to_dict()

        assert result['error_type'] == 'CardMergeError'
        assert result['message'] == 'Test'
        assert result['details'] == {'key': 'value'}
        assert result['suggestions'] == ['suggestion']


class TestSpecificErrorTypes:
    """Test specific error type implementations."""

    def test_status_codes(self):
        assert ValidationError("bad").status_code == 400
        assert ConfigurationError("bad").status_code == 422
        assert TemplateNotFoundError("abc").status_code == 404
        assert DatasetNotFoundError("abc").status_code == 404

    def test_template_image_missing_is_template_not_found(self):
        """A missing base image is reported as a missing template."""
        error = TemplateImageMissingError("t1", "deadbeef", "no such file")

        assert isinstance(error, TemplateNotFoundError)
        assert isinstance(error, NotFoundError)
        assert "t1" in str(error)
        assert error.details['image_key'] == "deadbeef"
        assert error.details['reason'] == "no such file"
        assert len(error.suggestions) > 0

    def test_stored_file_not_found(self):
        error = StoredFileNotFoundError("outputs", "0" * 24)

        assert "outputs/" in str(error)
        assert error.details == {'bucket': 'outputs', 'file_id': '0' * 24}

    def test_layout_degenerate_error(self):
        error = LayoutDegenerateError(0.01, 595.28, 841.89, 20)

        assert isinstance(error, ConfigurationError)
        assert error.status_code == 422
        assert error.details['aspect_ratio'] == 0.01
        assert "595.28x841.89" in str(error)

    def test_conversion_errors_keep_reason(self):
        failed = ConversionFailedError("timed out after 30s", returncode=None, stderr="")
        inconclusive = ValidationInconclusiveError("analysis exited with code 1")

        assert isinstance(failed, ConversionError)
        assert isinstance(inconclusive, ConversionError)
        assert failed.reason == "timed out after 30s"
        assert inconclusive.reason == "analysis exited with code 1"
        assert "CMYK conversion failed" in str(failed)

    def test_image_resolution_error(self):
        error = ImageResolutionError("http://x/y.png", "404 Client Error")

        assert error.details['value'] == "http://x/y.png"
        assert "404" in error.message

    def test_batch_cancelled_error(self):
        error = BatchCancelledError(3, 10)

        assert "3 of 10" in str(error)
        assert error.details == {'rendered': 3, 'total': 10}
