"""
Pytest configuration and fixtures for Card Merge Generator tests.

Provides shared fixtures, test configuration, and utilities
for running tests across the entire application.
"""

import base64
import io

import pytest
from PIL import Image, ImageDraw

from cardmerge import create_app
from cardmerge.config import AppConfig
from cardmerge.models import Template
from cardmerge.storage import DatasetStore, FilesystemStorage, TemplateStore


BASE_SIZE = (400, 250)


def png_bytes(size=(40, 40), color=(255, 0, 0, 255), mode='RGBA') -> bytes:
    """Solid-color PNG"""
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format='PNG')
    return buffer.getvalue()


def data_uri(data: bytes, mime: str = 'image/png') -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def decode_png(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        return img.convert('RGBA')


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create and configure a test Flask application."""
    root = tmp_path_factory.mktemp('app')
    app = create_app('testing', config_overrides={
        'TESTING': True,
        'SECRET_KEY': 'test-key',
        'DATA_FOLDER': str(root / 'data'),
        'TEMP_FOLDER': str(root / 'tmp'),
        'LOG_FILE': str(root / 'logs' / 'app.log'),
    })
    yield app


@pytest.fixture
def client(app):
    """Create a test client for the Flask application."""
    return app.test_client()


@pytest.fixture
def test_config(tmp_path):
    """Config pointing at per-test folders, no Ghostscript override."""
    return AppConfig(
        SECRET_KEY='test-key',
        TESTING=True,
        DATA_FOLDER=str(tmp_path / 'data'),
        TEMP_FOLDER=str(tmp_path / 'tmp'),
        LOG_FILE=str(tmp_path / 'logs' / 'app.log'),
    )


@pytest.fixture
def storage(tmp_path):
    """Empty filesystem object storage."""
    return FilesystemStorage(tmp_path / 'files')


@pytest.fixture
def template_store(tmp_path):
    return TemplateStore(tmp_path / 'templates')


@pytest.fixture
def dataset_store(tmp_path):
    return DatasetStore(tmp_path / 'datasets')


@pytest.fixture
def base_image_bytes():
    """A 400x250 white card with a light border, PNG encoded."""
    img = Image.new('RGB', BASE_SIZE, color='white')
    draw = ImageDraw.Draw(img)
    draw.rectangle([0, 0, BASE_SIZE[0] - 1, BASE_SIZE[1] - 1], outline=(200, 200, 200))
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return buffer.getvalue()


@pytest.fixture
def sample_template(storage, base_image_bytes):
    """Template stored in the templates bucket with a name and a photo field."""
    image_id = storage.write_buffer('templates', base_image_bytes, filename='card.png',
                                    content_type='image/png')
    return Template.model_validate({
        '_id': 'a' * 24,
        'name': 'Badge',
        'image': {'storage': 'gridfs', 'key': image_id, 'url': f'/files/templates/{image_id}'},
        'imageMeta': {'width': BASE_SIZE[0], 'height': BASE_SIZE[1], 'size': len(base_image_bytes)},
        'fields': [
            {'id': 'name', 'name': 'Name', 'type': 'text', 'x': 20, 'y': 20,
             'width': 200, 'height': 40, 'zIndex': 1,
             'style': {'fontFamily': 'Arial', 'fontSize': 24, 'color': '#000000'}},
            {'id': 'photo', 'name': 'Photo', 'type': 'image', 'x': 280, 'y': 100,
             'width': 100, 'height': 120, 'zIndex': 0},
        ],
        'mapping': {'name': 'Name', 'photo': 'Photo'},
    })


@pytest.fixture
def sample_records():
    """Twelve rows of simple text-only records."""
    return [{'Name': f'Person {i}', 'Photo': ''} for i in range(12)]
