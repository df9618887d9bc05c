"""
School Photo QR Pipeline - Main Application

This module serves as the main entry point for the QR pipeline HTTP API.
It builds the Flask application, wires the services together and exposes
them as JSON routes.

Features:
- Family portal QR generation (single, print and batch)
- Student identification QR issuing, validation, export and import
- QR detection and auto-tagging for uploaded photos
- QR cache statistics and maintenance
- WhatsApp notification of paid orders
"""

import io
import os
import asyncio
import logging
from dataclasses import asdict, dataclass

from flask import Flask, request, jsonify, send_file, current_app

from config import init_config
from photoqr.modules.database_manager import DatabaseManager
from photoqr.modules.token_service import TokenService
from photoqr.modules.qr_generator import QREncoder, QROptions
from photoqr.modules.qr_cache import QRCache
from photoqr.modules.qr_service import QRService
from photoqr.modules.batch_processor import BatchProcessor
from photoqr.modules.qr_detection import QRDetectionPipeline, ImagePreprocessor
from photoqr.modules.notification_system import WhatsAppNotifier, WhatsAppSettings, OrderSummary
from photoqr.modules.errors import (
    ValidationError, NotFoundError, EncodingError, ExternalServiceError
)

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO'),
    format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
)
logger = logging.getLogger(__name__)


@dataclass
class PhotoQRServices:
    """Service objects shared by all requests of one application."""
    db: DatabaseManager
    tokens: TokenService
    encoder: QREncoder
    cache: QRCache
    qr_service: QRService
    batch_processor: BatchProcessor
    detection: QRDetectionPipeline
    notifier: WhatsAppNotifier


def build_services(settings) -> PhotoQRServices:
    """Construct the service graph from a Flask config mapping."""
    db = DatabaseManager(settings['DATABASE_PATH'])
    tokens = TokenService(db, settings['PORTAL_BASE_URL'], settings['TOKEN_EXPIRY_DAYS'])
    encoder = QREncoder(QROptions(
        size=settings['QR_DEFAULT_SIZE'],
        error_correction=settings['QR_DEFAULT_ERROR_CORRECTION'],
        margin=settings['QR_DEFAULT_MARGIN'],
        dark_color=settings['QR_DARK_COLOR'],
        light_color=settings['QR_LIGHT_COLOR']
    ))
    cache = QRCache(default_ttl=settings['QR_CACHE_TTL'],
                    sweep_interval=settings['QR_CACHE_SWEEP_INTERVAL'])
    if settings['QR_CACHE_SWEEP_ENABLED']:
        cache.start()

    qr_service = QRService(db, tokens, encoder, cache)
    batch_processor = BatchProcessor(
        qr_service,
        generation_batch_size=settings['QR_GENERATION_BATCH_SIZE'],
        validation_batch_size=settings['QR_VALIDATION_BATCH_SIZE'],
        concurrency_limit=settings['QR_BATCH_CONCURRENCY_LIMIT'],
        timeout=settings['QR_BATCH_TIMEOUT']
    )
    detection = QRDetectionPipeline(
        qr_service,
        preprocessor=ImagePreprocessor(
            max_width=settings['DETECTION_MAX_WIDTH'],
            max_height=settings['DETECTION_MAX_HEIGHT'],
            enhance_contrast=settings['DETECTION_ENHANCE_CONTRAST']
        ),
        rotations=settings['DETECTION_ROTATIONS'],
        batch_size=settings['DETECTION_BATCH_SIZE']
    )
    notifier = WhatsAppNotifier(db, WhatsAppSettings.from_mapping(settings))

    return PhotoQRServices(
        db=db,
        tokens=tokens,
        encoder=encoder,
        cache=cache,
        qr_service=qr_service,
        batch_processor=batch_processor,
        detection=detection,
        notifier=notifier
    )


def services() -> PhotoQRServices:
    return current_app.extensions['photoqr']


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(data, *fields):
    missing = [f"{field} is required" for field in fields if not data.get(field)]
    if missing:
        raise ValidationError(missing)


def _error_response(error, status):
    body = {'success': False, 'message': str(error)}
    if isinstance(error, ValidationError):
        body['errors'] = error.messages
    return jsonify(body), status


def register_error_handlers(app):
    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        return _error_response(error, 400)

    @app.errorhandler(NotFoundError)
    def handle_not_found(error):
        return _error_response(error, 404)

    @app.errorhandler(EncodingError)
    def handle_encoding_error(error):
        return _error_response(error, 422)

    @app.errorhandler(ExternalServiceError)
    def handle_external_error(error):
        logger.error(f"External service error: {str(error)}")
        return _error_response(error, 502)


def register_routes(app):

    @app.route('/api/qr/config', methods=['GET'])
    def qr_config():
        """Rendering recommendations"""
        return jsonify({'success': True, 'data': services().encoder.get_qr_config()})

    @app.route('/api/qr/subjects/<subject_id>', methods=['POST'])
    def generate_subject_qr(subject_id):
        """Family portal QR for one subject"""
        data = _json_body()
        result = asyncio.run(services().qr_service.generate_qr_for_subject(
            subject_id, data.get('subject_name'), data.get('options')
        ))
        return jsonify({'success': True, 'data': asdict(result)})

    @app.route('/api/qr/subjects/<subject_id>/print', methods=['GET'])
    def print_subject_qr(subject_id):
        """Print-profile PNG for one subject"""
        png = asyncio.run(services().qr_service.generate_qr_for_print(subject_id))
        return send_file(io.BytesIO(png), mimetype='image/png',
                         download_name=f"qr_{subject_id}.png")

    @app.route('/api/qr/subjects/<subject_id>/rotate', methods=['POST'])
    def rotate_subject_token(subject_id):
        token = asyncio.run(services().qr_service.rotate_subject_token(subject_id))
        return jsonify({'success': True, 'data': {
            'portal_url': services().tokens.generate_portal_url(token)
        }})

    @app.route('/api/qr/tokens/<token>', methods=['GET'])
    def validate_portal_token(token):
        valid = asyncio.run(services().qr_service.validate_qr_url(token))
        return jsonify({'success': True, 'data': {'valid': valid}})

    @app.route('/api/qr/batch/generate', methods=['POST'])
    def batch_generate():
        data = _json_body()
        _require(data, 'event_id')
        report = asyncio.run(services().batch_processor.generate_batch_qr_codes(
            data['event_id'], data.get('students'), data.get('options')
        ))
        return jsonify({'success': True, 'data': report.to_dict()})

    @app.route('/api/qr/batch/identification', methods=['POST'])
    def batch_identification():
        data = _json_body()
        _require(data, 'event_id')
        report = asyncio.run(services().batch_processor.generate_batch_student_identification(
            data['event_id'], data.get('students'), data.get('options')
        ))
        return jsonify({'success': True, 'data': report.to_dict()})

    @app.route('/api/qr/batch/validate', methods=['POST'])
    def batch_validate():
        data = _json_body()
        report = asyncio.run(services().batch_processor.validate_batch_qr_codes(
            data.get('event_id'), data.get('qr_codes'),
            data.get('validate_against_event', True)
        ))
        return jsonify({'success': True, 'data': report.to_dict()})

    @app.route('/api/qr/validate', methods=['POST'])
    def validate_code():
        """Validate a single decoded code string"""
        data = _json_body()
        _require(data, 'code_value')
        result = asyncio.run(services().qr_service.validate_student_qr_code(
            data['code_value'], data.get('event_id')
        ))
        return jsonify({'success': True, 'data': {
            'valid': result is not None,
            'student': asdict(result) if result else None,
        }})

    @app.route('/api/qr/detect', methods=['POST'])
    def detect():
        """Detect student codes in one uploaded photo"""
        upload = request.files.get('image')
        if upload is None:
            raise ValidationError("image file is required")
        detections = asyncio.run(services().detection.detect(
            upload.read(), request.form.get('event_id')
        ))
        return jsonify({'success': True, 'data': {
            'filename': upload.filename,
            'detections': [d.to_dict() for d in detections],
        }})

    @app.route('/api/qr/detect/batch', methods=['POST'])
    def detect_batch():
        uploads = request.files.getlist('images')
        if not uploads:
            raise ValidationError("images files are required")
        images = [(upload.filename or f"image_{i}", upload.read()) for i, upload in enumerate(uploads)]
        results = asyncio.run(services().detection.batch_detect(images, request.form.get('event_id')))
        return jsonify({'success': True, 'data': results})

    @app.route('/api/photos/<photo_id>/tag', methods=['POST'])
    def tag_photo(photo_id):
        """Detect codes in a stored photo and link it to the students found"""
        upload = request.files.get('image')
        if upload is None:
            raise ValidationError("image file is required")
        result = asyncio.run(services().detection.detect_and_tag_photo(
            photo_id, upload.read(), request.form.get('event_id')
        ))
        return jsonify({'success': True, 'data': result})

    @app.route('/api/qr/cache/stats', methods=['GET'])
    def cache_stats():
        return jsonify({'success': True, 'data': services().cache.stats()})

    @app.route('/api/qr/cache/clear', methods=['POST'])
    def cache_clear():
        cleared = services().cache.clear()
        return jsonify({'success': True, 'data': {'cleared': cleared}})

    @app.route('/api/events/<event_id>/qr/stats', methods=['GET'])
    def event_qr_stats(event_id):
        stats = asyncio.run(services().qr_service.get_qr_code_stats(event_id))
        return jsonify({'success': True, 'data': stats})

    @app.route('/api/events/<event_id>/qr/export', methods=['GET'])
    def event_qr_export(event_id):
        fmt = request.args.get('format', 'json')
        content = asyncio.run(services().batch_processor.export_event_qr_codes(event_id, fmt))
        mimetype = 'text/csv' if fmt == 'csv' else 'application/json'
        return current_app.response_class(
            content,
            mimetype=mimetype,
            headers={'Content-Disposition': f"attachment; filename=qr_codes_{event_id}.{fmt}"}
        )

    @app.route('/api/events/<event_id>/qr/import', methods=['POST'])
    def event_qr_import(event_id):
        data = _json_body()
        report = asyncio.run(services().batch_processor.import_qr_codes(event_id, data.get('rows')))
        return jsonify({'success': True, 'data': report.to_dict()})

    @app.route('/api/events/<event_id>/qr/print-sheet', methods=['GET'])
    def event_print_sheet(event_id):
        pdf = asyncio.run(services().qr_service.generate_event_print_sheet(event_id))
        return send_file(io.BytesIO(pdf), mimetype='application/pdf',
                         download_name=f"qr_codes_{event_id}.pdf")

    @app.route('/api/orders/paid', methods=['POST'])
    def order_paid():
        """Notify the event photographer about a paid order"""
        data = _json_body()
        _require(data, 'order_id', 'order_source')
        try:
            order = OrderSummary(
                order_id=str(data['order_id']),
                order_source=data['order_source'],
                event_id=data.get('event_id'),
                total_value=float(data.get('total_value') or 0),
                currency=data.get('currency') or 'ARS',
                order_code=data.get('order_code'),
                customer_name=data.get('customer_name'),
                customer_email=data.get('customer_email'),
                customer_phone=data.get('customer_phone'),
                items_description=data.get('items_description') or 'No item details',
                metadata=data.get('metadata') or {}
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid order data: {e}") from e

        outcome = asyncio.run(services().notifier.handle_order_paid(order))
        return jsonify({'success': True, 'data': asdict(outcome)})


def create_app(config_name=None, service_overrides=None):
    """
    Create the Flask application.

    Args:
        config_name (str): Key of the configuration dictionary
        service_overrides (dict): Replacement service objects, used by tests

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    init_config(app, config_name)

    app_services = build_services(app.config)
    for name, value in (service_overrides or {}).items():
        setattr(app_services, name, value)
    app.extensions['photoqr'] = app_services

    register_error_handlers(app)
    register_routes(app)

    logger.info(f"Application created with {config_name or os.environ.get('FLASK_ENV', 'default')} configuration")
    return app


if __name__ == '__main__':
    application = create_app()
    application.run(
        debug=application.config['DEBUG'],
        host=os.environ.get('HOST', '0.0.0.0'),
        port=int(os.environ.get('PORT', 5000))
    )
