from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from loopcaster import __version__
from loopcaster.errors import SpawnError, StreamAlreadyActiveError, StreamNotFoundError


def create_app(service):
    app = Flask(__name__)
    CORS(app)
    app.config['STREAM_SERVICE'] = service

    @app.errorhandler(StreamNotFoundError)
    def handle_not_found(e):
        return jsonify(success=False, message=str(e)), 404

    @app.errorhandler(StreamAlreadyActiveError)
    def handle_already_active(e):
        return jsonify(success=False, message=str(e), state=e.state), 409

    @app.errorhandler(SpawnError)
    def handle_spawn_error(e):
        app.logger.error(f"Encoder failed to start: {e}")
        return jsonify(success=False, message=str(e), returncode=e.returncode), 502

    @app.errorhandler(ValueError)
    def handle_bad_request(e):
        return jsonify(success=False, message=str(e)), 400

    @app.errorhandler(Exception)
    def handle_unhandled_exception(e):
        if isinstance(e, HTTPException):
            return jsonify(success=False, message=e.description), e.code
        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify(success=False, message="An unhandled server error occurred."), 500

    @app.route('/health', methods=['GET'])
    def health_route():
        return jsonify(success=True, version=__version__,
                       active_streams=len(service.supervisor.active_ids()))

    @app.route('/streams', methods=['GET'])
    def list_streams_route():
        return jsonify(success=True, streams=service.list_runtime_status())

    @app.route('/streams/<stream_id>/status', methods=['GET'])
    def stream_status_route(stream_id):
        return jsonify(success=True, stream=service.get_runtime_status(stream_id))

    @app.route('/streams/<stream_id>/start', methods=['POST'])
    def start_stream_route(stream_id):
        status = service.start_now(stream_id)
        app.logger.info(f"[{stream_id}] Started from API, PID {status['pid']}")
        return jsonify(success=True, message=f"Stream {stream_id} is live.", stream=status)

    @app.route('/streams/<stream_id>/stop', methods=['POST'])
    def stop_stream_route(stream_id):
        stopped, status = service.stop_now(stream_id)
        message = f"Stopped {stream_id}." if stopped else f"{stream_id} was not running."
        return jsonify(success=True, stopped=stopped, message=message, stream=status)

    @app.route('/streams/<stream_id>/recurring', methods=['POST'])
    def recurring_route(stream_id):
        data = request.get_json(silent=True)
        if not data or not isinstance(data.get('enabled'), bool):
            return jsonify(success=False, message='Expected JSON body {"enabled": true|false}'), 400
        service.set_recurring_enabled(stream_id, data['enabled'])
        return jsonify(success=True, stream=service.get_runtime_status(stream_id))

    @app.route('/streams/<stream_id>/logs', methods=['GET'])
    def stream_logs_route(stream_id):
        log_type = request.args.get('type', 'log')
        try:
            num_lines = int(request.args.get('lines', '100'))
        except ValueError:
            return jsonify(success=False, message='lines must be an integer'), 400
        num_lines = max(1, min(num_lines, 2000))
        lines = service.tail_log(stream_id, log_type, num_lines)
        return jsonify(success=True, type=log_type, lines=lines)

    return app
