"""
Object storage and document stores.

FilesystemStorage keeps one directory per bucket with a JSON sidecar per
object. TemplateStore and DatasetStore keep one JSON document per id.
"""

import json
import re
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Union

from loguru import logger

from cardmerge.errors import (
    DatasetNotFoundError,
    StoredFileNotFoundError,
    TemplateNotFoundError,
    ValidationError,
)
from cardmerge.models import Dataset, Template


OBJECT_ID_PATTERN = re.compile(r'^[a-f0-9]{24}$', re.IGNORECASE)
BUCKET_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


def new_object_id() -> str:
    """24-hex id, the same shape the /files/<bucket>/<id> routes accept"""
    return uuid.uuid4().hex[:24]


def is_object_id(value: str) -> bool:
    return bool(OBJECT_ID_PATTERN.match(str(value or '')))


class ObjectStorage:
    """Read/write interface the render pipeline depends on."""

    def read_by_id(self, bucket: str, file_id: str) -> bytes:
        raise NotImplementedError

    def write_buffer(self, bucket: str, data: bytes, filename: str = None,
                     content_type: str = None) -> str:
        raise NotImplementedError

    def get_file_info(self, bucket: str, file_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


class FilesystemStorage(ObjectStorage):
    """Object storage backed by a local directory tree."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _object_path(self, bucket: str, file_id: str) -> Path:
        if not BUCKET_PATTERN.match(bucket or ''):
            raise ValidationError(f"Invalid bucket name: {bucket!r}")
        if not is_object_id(file_id):
            raise StoredFileNotFoundError(bucket, file_id)
        return self.root / bucket / file_id.lower()

    def read_by_id(self, bucket: str, file_id: str) -> bytes:
        path = self._object_path(bucket, file_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise StoredFileNotFoundError(bucket, file_id)

    def write_buffer(self, bucket: str, data: bytes, filename: str = None,
                     content_type: str = None) -> str:
        file_id = new_object_id()
        path = self._object_path(bucket, file_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Data first, then metadata: an object is visible once its sidecar exists
        path.write_bytes(data)
        meta = {
            '_id': file_id,
            'filename': filename or f"file-{file_id}",
            'contentType': content_type or 'application/octet-stream',
            'length': len(data),
        }
        path.with_suffix('.json').write_text(json.dumps(meta), encoding='utf-8')

        logger.debug(f"Stored {bucket}/{file_id} ({len(data):,} bytes, {meta['contentType']})")
        return file_id

    def get_file_info(self, bucket: str, file_id: str) -> Optional[Dict[str, Any]]:
        try:
            path = self._object_path(bucket, file_id)
        except StoredFileNotFoundError:
            return None
        meta_path = path.with_suffix('.json')
        if not meta_path.exists():
            return None
        return json.loads(meta_path.read_text(encoding='utf-8'))

    def delete(self, bucket: str, file_id: str) -> None:
        path = self._object_path(bucket, file_id)
        for target in (path, path.with_suffix('.json')):
            if target.exists():
                target.unlink()


class _JsonDocumentStore:
    """One JSON file per document under a directory"""

    model = None
    not_found_error = None

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, doc_id: str) -> Path:
        if not is_object_id(doc_id):
            raise self.not_found_error(doc_id)
        return self.root / f"{doc_id.lower()}.json"

    def get(self, doc_id: str):
        path = self._path(doc_id)
        if not path.exists():
            raise self.not_found_error(doc_id)
        return self.model.model_validate_json(path.read_text(encoding='utf-8'))

    def save(self, document) -> None:
        path = self._path(document.id)
        path.write_text(document.model_dump_json(by_alias=True), encoding='utf-8')

    def create(self, **values):
        document = self.model(_id=new_object_id(), **values)
        self.save(document)
        return document

    def delete(self, doc_id: str) -> None:
        path = self._path(doc_id)
        if not path.exists():
            raise self.not_found_error(doc_id)
        path.unlink()


class TemplateStore(_JsonDocumentStore):
    model = Template
    not_found_error = TemplateNotFoundError


class DatasetStore(_JsonDocumentStore):
    model = Dataset
    not_found_error = DatasetNotFoundError
