"""
Value resolution for template fields.

Decides once per field whether the mapped value is literal text or an image
reference, and turns image references into bytes. Image failures never
propagate: the caller gets the raw value back as text instead.
"""

import base64
import binascii
import io
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import requests
from PIL import Image, UnidentifiedImageError
from loguru import logger

from cardmerge.errors import CardMergeError, ImageResolutionError
from cardmerge.models import DataRecord, FieldKind, TemplateField
from cardmerge.storage import ObjectStorage


IMAGE_EXTENSION_PATTERN = re.compile(r'\.(png|jpe?g|gif|webp|bmp|svg)(\?.*)?$', re.IGNORECASE)
URL_PATTERN = re.compile(r'^(https?:)?//', re.IGNORECASE)
HTTP_URL_PATTERN = re.compile(r'^https?://', re.IGNORECASE)
DATA_URI_PATTERN = re.compile(r'^data:image/', re.IGNORECASE)


@dataclass(frozen=True)
class Literal:
    """Field value rendered as text"""
    text: str


@dataclass(frozen=True)
class ImageRef:
    """Field value that points at an image"""
    ref: str


FieldValue = Union[Literal, ImageRef]


@dataclass(frozen=True)
class ResolvedImage:
    """Image bytes plus the raw value they came from"""
    data: bytes
    source: str


def stringify(value: Any) -> str:
    """Render a record value the way it should appear on the card"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class ValueResolver:
    """Resolves field values against a record and fetches image bytes."""

    def __init__(self,
                 storage: Optional[ObjectStorage] = None,
                 files_prefix: str = "files",
                 http_timeout: float = 10.0,
                 base_dir: Union[str, Path, None] = None,
                 session: Optional[requests.Session] = None):
        self.storage = storage
        self.files_prefix = files_prefix.strip('/')
        self.http_timeout = http_timeout
        self.base_dir = Path(base_dir) if base_dir else None
        self._session = session
        self._local = threading.local()
        self._files_pattern = re.compile(
            rf'^/{re.escape(self.files_prefix)}/([^/]+)/([a-f0-9]{{24}})(?:$|[/?#])',
            re.IGNORECASE
        )

    @property
    def session(self) -> requests.Session:
        """Injected session, otherwise one per render thread"""
        if self._session is not None:
            return self._session
        session = getattr(self._local, 'session', None)
        if session is None:
            session = self._local.session = requests.Session()
        return session

    def looks_like_image(self, value: str) -> bool:
        """URL, data URI, internal storage path or image filename"""
        if not value:
            return False
        return bool(
            URL_PATTERN.match(value)
            or DATA_URI_PATTERN.match(value)
            or value.lower().startswith(f"/{self.files_prefix.lower()}/")
            or IMAGE_EXTENSION_PATTERN.search(value)
        )

    def classify(self, field: TemplateField, mapping: dict, record: DataRecord) -> Optional[FieldValue]:
        """
        Decide what a field shows for one record.

        Returns None when an image field has no mapped column (the field is
        skipped), ImageRef when image resolution should be attempted and
        Literal otherwise.
        """
        column = (mapping or {}).get(field.id)
        if not column:
            if field.kind == FieldKind.IMAGE:
                return None
            return Literal("")

        text = stringify(record.get(column))
        if text and (field.kind == FieldKind.IMAGE or self.looks_like_image(text)):
            return ImageRef(text)
        return Literal(text)

    def resolve(self, field: TemplateField, mapping: dict,
                record: DataRecord) -> Optional[Union[Literal, ResolvedImage]]:
        """
        Classify and, for image references, fetch the bytes.

        An image that cannot be fetched or decoded falls back to Literal with
        the raw value.
        """
        value = self.classify(field, mapping, record)
        if not isinstance(value, ImageRef):
            return value

        try:
            data = self.load_image_bytes(value.ref)
            self._verify_image(data)
        except ImageResolutionError as e:
            logger.warning(f"Field {field.id}: {e.message}; rendering value as text")
            return Literal(value.ref)
        return ResolvedImage(data=data, source=value.ref)

    def load_image_bytes(self, value: str) -> bytes:
        """Fetch image bytes: data URI, storage ref, HTTP(S) URL, then local path."""
        if DATA_URI_PATTERN.match(value):
            return self._decode_data_uri(value)

        files_match = self._files_pattern.match(value)
        if files_match and self.storage is not None:
            bucket, file_id = files_match.group(1), files_match.group(2)
            try:
                return self.storage.read_by_id(bucket, file_id)
            except (CardMergeError, OSError) as e:
                # fall through to the remaining strategies
                logger.debug(f"Storage lookup failed for {bucket}/{file_id}: {e}")

        if HTTP_URL_PATTERN.match(value):
            return self._fetch_url(value)

        return self._read_local(value)

    def _decode_data_uri(self, value: str) -> bytes:
        _, _, payload = value.partition(',')
        try:
            return base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as e:
            raise ImageResolutionError(value[:64], f"invalid base64 payload: {e}")

    def _fetch_url(self, url: str) -> bytes:
        try:
            response = self.session.get(url, timeout=self.http_timeout, allow_redirects=True)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ImageResolutionError(url, str(e))
        return response.content

    def _read_local(self, value: str) -> bytes:
        relative = value.lstrip('/')
        base = self.base_dir or Path(os.getcwd())
        if not relative:
            raise ImageResolutionError(value, "no such file")
        path = base / relative
        try:
            # is_file() raises for some errnos, e.g. names too long for the filesystem
            if not path.is_file():
                raise ImageResolutionError(value, "no such file")
            return path.read_bytes()
        except (OSError, ValueError) as e:
            raise ImageResolutionError(value[:64], str(e))

    @staticmethod
    def _verify_image(data: bytes) -> None:
        if not data:
            raise ImageResolutionError("<empty>", "empty image payload")
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.verify()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
            raise ImageResolutionError("<bytes>", f"undecodable image: {e}")
