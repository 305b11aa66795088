"""
Error handling for Card Merge Generator.

Provides specific exception types for the failure modes of the
render/batch pipeline, with context for logging and API responses.
"""

from typing import Dict, List, Any


class CardMergeError(Exception):
    """Base exception for all Card Merge errors."""

    status_code = 500

    def __init__(self, message: str, details: Dict[str, Any] = None, suggestions: List[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.suggestions = suggestions or []

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            'error_type': self.__class__.__name__,
            'message': self.message,
            'details': self.details,
            'suggestions': self.suggestions
        }


class ValidationError(CardMergeError):
    """Raised when request input validation fails."""
    status_code = 400


class ConfigurationError(CardMergeError):
    """Raised when configuration is invalid or unusable."""
    status_code = 422


class ProcessingError(CardMergeError):
    """Raised when the processing pipeline fails."""
    pass


class NotFoundError(CardMergeError):
    """Raised when a requested resource does not exist."""
    status_code = 404


class RenderError(ProcessingError):
    """Raised when card rendering fails."""
    pass


class ConversionError(ProcessingError):
    """Raised by the CMYK conversion step."""
    pass


# Specific error classes for the pipeline failure modes

class TemplateNotFoundError(NotFoundError):
    """Raised when a template id does not resolve to a template."""

    def __init__(self, template_id: str):
        super().__init__(
            f"Template not found: {template_id}",
            details={'template_id': template_id},
            suggestions=["Check the template id", "Upload the template again"]
        )


class TemplateImageMissingError(TemplateNotFoundError):
    """Raised when a template's base image cannot be loaded."""

    def __init__(self, template_id: str, image_key: str, reason: str = None):
        NotFoundError.__init__(
            self,
            f"Template image not found for {template_id}: {image_key}",
            details={'template_id': template_id, 'image_key': image_key, 'reason': reason},
            suggestions=[
                "Re-upload the template image",
                "Verify the storage folder is mounted and readable"
            ]
        )


class DatasetNotFoundError(NotFoundError):
    """Raised when a dataset id does not resolve to a dataset."""

    def __init__(self, dataset_id: str):
        super().__init__(
            f"Dataset not found: {dataset_id}",
            details={'dataset_id': dataset_id},
            suggestions=["Check the dataset id", "Upload the spreadsheet again"]
        )


class StoredFileNotFoundError(NotFoundError):
    """Raised when an object storage id is unknown."""

    def __init__(self, bucket: str, file_id: str):
        super().__init__(
            f"File not found: {bucket}/{file_id}",
            details={'bucket': bucket, 'file_id': file_id}
        )


class ImageResolutionError(RenderError):
    """Raised when a field value cannot be turned into image bytes."""

    def __init__(self, value: str, reason: str):
        super().__init__(
            f"Could not resolve image for value {value!r}: {reason}",
            details={'value': value, 'reason': reason}
        )


class LayoutDegenerateError(ConfigurationError):
    """Raised when no card grid fits on the page."""

    def __init__(self, aspect_ratio: float, page_width: float, page_height: float, margin: float):
        super().__init__(
            f"No card layout fits on a {page_width:.2f}x{page_height:.2f}pt page "
            f"(margin {margin}, aspect ratio {aspect_ratio})",
            details={
                'aspect_ratio': aspect_ratio,
                'page_width': page_width,
                'page_height': page_height,
                'margin': margin
            },
            suggestions=[
                "Check the template image dimensions",
                "Reduce the page margin",
                "Use a larger page size"
            ]
        )


class ConversionFailedError(ConversionError):
    """Raised when the external converter fails, times out or writes nothing."""

    def __init__(self, reason: str, returncode: int = None, stderr: str = None):
        super().__init__(
            f"CMYK conversion failed: {reason}",
            details={'reason': reason, 'returncode': returncode, 'stderr': stderr}
        )
        self.reason = reason


class ValidationInconclusiveError(ConversionError):
    """Raised when the color space analysis itself cannot run."""

    def __init__(self, reason: str):
        super().__init__(
            f"CMYK validation inconclusive: {reason}",
            details={'reason': reason}
        )
        self.reason = reason


class BatchCancelledError(ProcessingError):
    """Raised when a batch job is aborted between records."""

    def __init__(self, rendered: int, total: int):
        super().__init__(
            f"Batch cancelled after {rendered} of {total} records",
            details={'rendered': rendered, 'total': total}
        )
