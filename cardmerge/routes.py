"""
Flask routes for Card Merge Generator
JSON API for templates, datasets, previews and batch PDFs, plus object downloads
"""

import base64
import io
from pathlib import Path

from flask import Blueprint, Response, current_app, jsonify, request
from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename
from loguru import logger

from .batch import BatchGenerator
from .cmyk import ghostscript_version, is_converter_available
from .datasets import extract_table
from .errors import CardMergeError, ValidationError
from .models import TemplateField
from .render import TEMPLATES_BUCKET, CardRenderer


bp = Blueprint('api', __name__, url_prefix='/api')
files_bp = Blueprint('files', __name__)

SAMPLE_ROW_COUNT = 5


def _services():
    return current_app.extensions['cardmerge']


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _uploaded_file(allowed_extensions):
    """Read the multipart 'file' upload, enforcing extension and size limits"""
    if 'file' not in request.files:
        raise ValidationError("file is required")
    upload = request.files['file']
    if not upload.filename:
        raise ValidationError("No file selected")

    suffix = Path(upload.filename).suffix.lower()
    if suffix not in allowed_extensions:
        raise ValidationError(
            f"Unsupported file type: {suffix or upload.filename}",
            details={'filename': upload.filename},
            suggestions=[f"Allowed extensions: {', '.join(allowed_extensions)}"]
        )

    data = upload.read()
    max_size = current_app.config.get('MAX_UPLOAD_SIZE', 10 * 1024 * 1024)
    if len(data) > max_size:
        raise ValidationError(
            f"File too large: {len(data) / (1024 * 1024):.1f}MB",
            details={'filename': upload.filename, 'size': len(data), 'limit': max_size},
            suggestions=[f"Upload a file under {max_size / (1024 * 1024):.0f}MB"]
        )
    return upload, data


def _flag(value, name, default):
    """JSON boolean, also accepting "true"/"false" style strings and 0/1"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ('true', '1', 'yes', 'on'):
            return True
        if lowered in ('false', '0', 'no', 'off'):
            return False
    raise ValidationError(f"{name} must be a boolean", details={name: value})


def _row_range(rows, range_spec):
    """Slice rows by an optional {start, end} range, clamped to the row count"""
    range_spec = range_spec or {}
    if not isinstance(range_spec, dict):
        raise ValidationError("range must be an object with start and end")
    try:
        start = int(range_spec.get('start') or 0)
        end = range_spec.get('end')
        end = len(rows) if end is None else min(int(end), len(rows))
    except (TypeError, ValueError):
        raise ValidationError("range start and end must be integers")
    if start < 0 or start > end:
        raise ValidationError(f"Invalid range: {start}..{end}")
    return rows[start:end]


@bp.errorhandler(CardMergeError)
def handle_card_merge_error(error: CardMergeError):
    if error.status_code >= 500:
        logger.error(f"{error.__class__.__name__}: {error.message}")
    else:
        logger.warning(f"{error.__class__.__name__}: {error.message}")
    return jsonify(error.to_dict()), error.status_code


@files_bp.errorhandler(CardMergeError)
def handle_file_error(error: CardMergeError):
    return jsonify(error.to_dict()), error.status_code


@bp.route('/health', methods=['GET'])
def health():
    return jsonify({'ok': True})


@bp.route('/templates', methods=['POST'])
def create_template():
    """Upload a base image and create an empty template around it"""
    upload, data = _uploaded_file(current_app.config['ALLOWED_IMAGE_EXTENSIONS'])

    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            img.verify()
    except (OSError, UnidentifiedImageError) as e:
        raise ValidationError(f"Corrupted image: {e}", details={'filename': upload.filename})

    services = _services()
    filename = secure_filename(upload.filename) or 'template.png'
    file_id = services['storage'].write_buffer(TEMPLATES_BUCKET, data, filename=filename,
                                               content_type=upload.mimetype)
    prefix = current_app.config['FILES_PREFIX']
    template = services['templates'].create(
        name=request.form.get('name') or Path(upload.filename).stem,
        image={'storage': 'gridfs', 'key': file_id, 'url': f"/{prefix}/{TEMPLATES_BUCKET}/{file_id}"},
        imageMeta={'width': width, 'height': height, 'size': len(data)},
    )

    logger.info(f"Template {template.id} created from {upload.filename} ({width}x{height})")
    return jsonify(template.model_dump(by_alias=True, mode='json')), 201


@bp.route('/templates/<template_id>', methods=['GET'])
def get_template(template_id):
    template = _services()['templates'].get(template_id)
    return jsonify(template.model_dump(by_alias=True, mode='json'))


@bp.route('/templates/<template_id>/layout', methods=['PUT'])
def update_template_layout(template_id):
    """Replace fields and/or mapping; either may be omitted"""
    payload = _json_body()
    store = _services()['templates']
    template = store.get(template_id)

    update = {}
    fields = payload.get('fields')
    if isinstance(fields, list):
        try:
            update['fields'] = [TemplateField.model_validate(f) for f in fields]
        except ValueError as e:
            raise ValidationError(f"Invalid fields: {e}")
    mapping = payload.get('mapping')
    if isinstance(mapping, dict):
        update['mapping'] = {str(k): str(v) for k, v in mapping.items()}

    template = template.model_copy(update=update)
    store.save(template)
    logger.info(f"Template {template_id} layout saved: {len(template.fields)} fields")
    return jsonify(template.model_dump(by_alias=True, mode='json'))


@bp.route('/datasets', methods=['POST'])
def create_dataset():
    """Upload a spreadsheet and keep its header and rows"""
    upload, data = _uploaded_file(current_app.config['ALLOWED_DATASET_EXTENSIONS'])
    headers, rows = extract_table(upload.filename, data)

    dataset = _services()['datasets'].create(name=upload.filename, headers=headers, rows=rows)
    return jsonify({'_id': dataset.id, 'headers': dataset.headers, 'rowCount': dataset.row_count}), 201


@bp.route('/datasets/<dataset_id>', methods=['GET'])
def get_dataset(dataset_id):
    dataset = _services()['datasets'].get(dataset_id)
    return jsonify({
        '_id': dataset.id,
        'name': dataset.name,
        'headers': dataset.headers,
        'rowCount': dataset.row_count,
        'sampleRows': dataset.rows[:SAMPLE_ROW_COUNT],
    })


@bp.route('/datasets/<dataset_id>', methods=['DELETE'])
def delete_dataset(dataset_id):
    _services()['datasets'].delete(dataset_id)
    return '', 204


@bp.route('/generate/preview', methods=['POST'])
def generate_preview():
    """Render one record and return it inline as a PNG data URL"""
    payload = _json_body()
    services = _services()
    template = services['templates'].get(str(payload.get('templateId') or ''))

    record = payload.get('record') or {}
    if not isinstance(record, dict):
        raise ValidationError("record must be an object of column values")

    card = CardRenderer(storage=services['storage']).render_record(template, record)
    encoded = base64.b64encode(card.buffer).decode('ascii')
    return jsonify({'previewUrl': f"data:image/png;base64,{encoded}"})


@bp.route('/generate/batch', methods=['POST'])
def generate_batch():
    """Render a dataset (or a range of it) into one stored PDF"""
    payload = _json_body()
    services = _services()
    template = services['templates'].get(str(payload.get('templateId') or ''))
    dataset = services['datasets'].get(str(payload.get('datasetId') or ''))
    records = _row_range(dataset.rows, payload.get('range'))
    cmyk = _flag(payload.get('cmyk'), 'cmyk', default=True)

    generator = BatchGenerator(storage=services['storage'])
    result = generator.generate(template, records, cmyk=cmyk)
    file_id = generator.store(result)

    prefix = current_app.config['FILES_PREFIX']
    return jsonify({
        'pdfUrl': f"/{prefix}/outputs/{file_id}",
        'count': result.count,
        'fileId': file_id,
        'cmykCompatible': result.cmyk_compatible,
        'fullyConverted': result.fully_converted,
        'conversionError': result.conversion_error,
        'filename': result.filename,
        'pages': result.pages,
        'layout': result.layout.to_dict(),
    })


@bp.route('/generate/cmyk-support', methods=['GET'])
def cmyk_support():
    path = current_app.config.get('GHOSTSCRIPT_PATH')
    available = is_converter_available(path)
    return jsonify({
        'cmykSupported': available,
        'ghostscriptAvailable': available,
        'ghostscriptVersion': ghostscript_version(path) if available else None,
        'message': ("CMYK PDF generation is supported" if available
                    else "Install Ghostscript to enable CMYK PDF generation"),
    })


@files_bp.route('/<bucket>/<file_id>', methods=['GET'])
def serve_file(bucket, file_id):
    """Stream a stored object with its recorded content type"""
    storage = _services()['storage']
    info = storage.get_file_info(bucket, file_id)
    if info is None:
        return jsonify({'error': 'File not found'}), 404

    data = storage.read_by_id(bucket, file_id)
    response = Response(data, mimetype=info.get('contentType') or 'application/octet-stream')
    response.headers['Cache-Control'] = 'public, max-age=31536000, immutable'
    return response
