from flask import Flask, request
from flask_restx import Api, Resource, fields
from flask_cors import CORS
from datetime import datetime, timezone
import logging

from models import TERMINAL_STATUSES, STATUS_PROCESSING
from errors import StorageError

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 1000
FILE_STATUSES = TERMINAL_STATUSES + (STATUS_PROCESSING,)


def get_pagination(total, page, per_page):
    pages = (total + per_page - 1) // per_page
    return {
        'page': page,
        'per_page': per_page,
        'total': total,
        'pages': pages,
        'has_next': page < pages,
        'has_prev': page > 1
    }


def get_page_args():
    page = request.args.get('page', 1, type=int)
    per_page = min(request.args.get('per_page', 50, type=int), MAX_PER_PAGE)
    if page < 1:
        page = 1
    if per_page < 1:
        per_page = 1
    return page, per_page


def create_app(repository):
    """Read-only status API over file provenance and the station registry."""
    app = Flask(__name__)
    CORS(app)

    api = Api(
        app,
        version='1.0',
        title='CRN Ingestion Status API',
        description='Processing status of USCRN hourly files and the station registry',
        doc='/docs'
    )

    file_ns = api.namespace('api/files', description='Processed source files')
    station_ns = api.namespace('api/stations', description='Station registry')

    # Models for Swagger
    file_model = api.model('ProcessedFile', {
        'id': fields.Integer(),
        'file_name': fields.String(required=True),
        'file_url': fields.String(),
        'year': fields.Integer(),
        'state': fields.String(),
        'station_name': fields.String(),
        'rows_processed': fields.Integer(),
        'file_hash': fields.String(),
        'observations_inserted': fields.Integer(),
        'observations_updated': fields.Integer(),
        'parse_failures': fields.Integer(),
        'processing_status': fields.String(),
        'processed_at': fields.DateTime(),
    })

    station_model = api.model('Station', {
        'station_id': fields.Integer(required=True),
        'name': fields.String(),
        'state': fields.String(),
        'latitude': fields.Float(),
        'longitude': fields.Float(),
        'first_seen': fields.DateTime(),
    })

    pagination_model = api.model('Pagination', {
        'page': fields.Integer(),
        'per_page': fields.Integer(),
        'total': fields.Integer(),
        'pages': fields.Integer(),
        'has_next': fields.Boolean(),
        'has_prev': fields.Boolean(),
    })

    file_response = api.model('ProcessedFileResponse', {
        'data': fields.List(fields.Nested(file_model)),
        'pagination': fields.Nested(pagination_model)
    })

    station_response = api.model('StationResponse', {
        'data': fields.List(fields.Nested(station_model)),
        'pagination': fields.Nested(pagination_model)
    })

    @file_ns.route('/')
    class ProcessedFileList(Resource):
        @file_ns.doc('get_files', params={
            'page': 'Page number (default: 1)',
            'per_page': 'Records per page (default: 50, max: 1000)',
            'year': 'Filter by data year',
            'status': 'Filter by processing status (completed, failed, processing)',
        })
        @file_ns.marshal_with(file_response)
        def get(self):
            page, per_page = get_page_args()
            year = request.args.get('year', type=int)
            status = request.args.get('status')
            if status and status not in FILE_STATUSES:
                file_ns.abort(400, f"Unknown status '{status}', expected one of: {', '.join(FILE_STATUSES)}")
            total, rows = repository.list_processed_files(
                year=year, status=status, offset=(page - 1) * per_page, limit=per_page
            )
            return {'data': rows, 'pagination': get_pagination(total, page, per_page)}

    @file_ns.route('/<string:file_name>')
    class ProcessedFileDetail(Resource):
        @file_ns.doc('get_file')
        @file_ns.marshal_with(file_model)
        def get(self, file_name):
            row = repository.get_processed_file(file_name)
            if row is None:
                file_ns.abort(404, f"File {file_name} has not been processed")
            return row

    @station_ns.route('/')
    class StationList(Resource):
        @station_ns.doc('get_stations', params={
            'page': 'Page number (default: 1)',
            'per_page': 'Records per page (default: 50, max: 1000)',
            'state': 'Filter by two-letter state code',
        })
        @station_ns.marshal_with(station_response)
        def get(self):
            page, per_page = get_page_args()
            state = request.args.get('state')
            total, rows = repository.list_stations(
                state=state, offset=(page - 1) * per_page, limit=per_page
            )
            return {'data': rows, 'pagination': get_pagination(total, page, per_page)}

    @api.route('/api/health')
    class HealthCheck(Resource):
        @api.doc('health_check')
        def get(self):
            timestamp = datetime.now(timezone.utc).isoformat()
            try:
                repository.ping()
            except StorageError as e:
                logger.error(f"Health check failed: {e}")
                return {'status': 'unhealthy', 'database': 'unavailable', 'timestamp': timestamp}, 503
            return {'status': 'healthy', 'database': 'ok', 'timestamp': timestamp}

    return app
