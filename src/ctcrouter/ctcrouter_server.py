#!/usr/bin/env python3
from flask import Flask, jsonify, request, abort
from flask_cors import CORS
from typing import Any, Dict, Optional
import logging
import os
import signal
import sys

# Local imports
from . import __version__
from .devices import DeviceCatalog
from .engine import CommunicationError, EngineChannel, ProcessEngine
from .geometry import acoustic_preview, resolve_geometry
from .presentation import reflect, render_effects
from .presets import field_value, list_field_defaults
from .session import ConfigValidationError, SessionController, SessionStateError, UiEffect
from .storage import ConfigStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Global configuration
ENGINE_PATH = os.environ.get('CTCROUTER_ENGINE')  # Path to the native engine binary
CONFIG_DIR = os.environ.get('CTCROUTER_CONFIG_DIR')  # Defaults to ~/.config/ctcrouter
HOST = os.environ.get('CTCROUTER_HOST', '0.0.0.0')
PORT = int(os.environ.get('CTCROUTER_PORT', '10316'))

# Global engine, catalog and session controller
_engine: Optional[EngineChannel] = None
_catalog: Optional[DeviceCatalog] = None
_controller: Optional[SessionController] = None

app = Flask(__name__)
CORS(app)  # Enable CORS for all routes


def init_services(channel: Optional[EngineChannel] = None,
                  config_dir: Optional[str] = None) -> SessionController:
    """Create the engine channel, device catalog and session controller."""
    global _engine, _catalog, _controller

    _engine = channel if channel is not None else ProcessEngine(binary_path=ENGINE_PATH)
    _catalog = DeviceCatalog(_engine)
    _controller = SessionController(_engine, ConfigStore(config_dir or CONFIG_DIR), _catalog)
    return _controller


def get_controller() -> SessionController:
    if _controller is None:
        init_services()
    return _controller


# Add response headers middleware
@app.after_request
def after_request(response):
    """Add headers to all responses for better proxy compatibility."""
    response.headers["connection"] = "close"
    response.headers["server"] = f"ctcrouter-api/{__version__}"
    return response


# Add request logging middleware
@app.before_request
def log_request_info():
    """Log request information for debugging."""
    logger.info(f"Request: {request.method} {request.url}")
    if request.args:
        logger.debug(f"Query parameters: {dict(request.args)}")
    if request.content_type:
        logger.debug(f"Content-Type: {request.content_type}")


def _error_response(error, name: str, status: int):
    return jsonify({
        "error": name,
        "message": error.description,
        "endpoint": request.endpoint,
        "url": request.url,
        "method": request.method
    }), status


# Add error logging
@app.errorhandler(400)
def bad_request_error(error):
    """400 error handler with logging."""
    logger.warning(f"400 Bad Request: {request.method} {request.url} - {error.description}")
    return _error_response(error, "Bad Request", 400)


@app.errorhandler(404)
def not_found_error(error):
    """404 error handler with logging."""
    logger.warning(f"404 Not Found: {request.method} {request.url} - {error.description}")
    return _error_response(error, "Not Found", 404)


@app.errorhandler(409)
def conflict_error(error):
    """409 error handler for operations not allowed in the current session state."""
    logger.warning(f"409 Conflict: {request.method} {request.url} - {error.description}")
    return _error_response(error, "Conflict", 409)


@app.errorhandler(500)
def internal_error(error):
    """500 error handler with logging."""
    logger.error(f"500 Internal Server Error: {request.method} {request.url} - {error}")
    return jsonify({
        "error": "Internal Server Error",
        "message": "An internal server error occurred",
        "endpoint": request.endpoint,
        "url": request.url,
        "method": request.method
    }), 500


@app.errorhandler(502)
def bad_gateway_error(error):
    """502 error handler for an unreachable audio engine."""
    logger.error(f"502 Bad Gateway: {request.method} {request.url} - {error.description}")
    return _error_response(error, "Audio Engine Unavailable", 502)


def _form_from_request() -> Dict[str, Any]:
    """Raw form values from a JSON body or a form-encoded body."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            if request.get_data():
                abort(400, "Request body is not valid JSON")
            return {}
        if not isinstance(data, dict):
            abort(400, "Request body must be a JSON object")
        return data
    return request.form.to_dict()


@app.route("/version", methods=["GET"])
def get_version():
    """Get API version information."""
    return jsonify({
        "version": __version__,
        "api_name": "CTC Router Control API",
        "features": [
            "Audio device catalog from the native engine",
            "Listener/speaker geometry resolution",
            "Persistent session configuration",
            "Crosstalk-cancellation session start/stop",
            "Acoustic preview of speaker layouts"
        ],
        "server_info": {
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            "threading": "Multi-threaded request handling",
            "engine": ENGINE_PATH or "auto-detected ctc-engine binary"
        }
    })


@app.route("/devices", methods=["GET"])
def get_devices():
    """Fetch the audio devices from the engine."""
    controller = get_controller()
    try:
        _catalog.fetch()
    except CommunicationError as e:
        logger.error(f"Error fetching audio devices: {e}")
        abort(502, f"Failed to fetch audio devices: {str(e)}")

    options = _catalog.to_options()
    return jsonify({
        "input": options["input"],
        "output": options["output"],
        "count": len(options["input"]) + len(options["output"]),
        "state": controller.state.value
    })


@app.route("/config", methods=["GET"])
def get_config():
    """Get the saved configuration as form values."""
    return jsonify(get_controller().restore())


@app.route("/config", methods=["PUT"])
def put_config():
    """Normalize and save form values without starting a session."""
    controller = get_controller()
    raw = _form_from_request()
    try:
        config = controller.save(raw)
    except OSError as e:
        logger.error(f"Error saving configuration: {e}")
        abort(500, f"Failed to save configuration: {str(e)}")

    return jsonify({
        "status": "saved",
        "config": config.to_engine_payload()
    })


@app.route("/config/defaults", methods=["GET"])
def get_config_defaults():
    """Get the editable fields with their default values."""
    return jsonify({"fields": list_field_defaults()})


@app.route("/geometry/preview", methods=["POST"])
def preview_geometry():
    """Resolve a speaker layout and show the delays the engine will derive from it."""
    raw = _form_from_request()
    geometry = resolve_geometry(raw)
    sample_rate_str = request.args.get("sample_rate", "48000")
    try:
        sample_rate = int(sample_rate_str)
        if sample_rate not in [44100, 48000, 88200, 96000, 192000]:
            abort(400, "sample_rate must be one of: 44100, 48000, 88200, 96000, 192000")
    except ValueError:
        abort(400, "Invalid sample_rate: must be an integer")

    try:
        preview = acoustic_preview(
            geometry,
            temperature=field_value(raw, "temperature"),
            lowpass_cutoff_min=field_value(raw, "lowpass_cutoff_min"),
            sample_rate=sample_rate
        )
    except ValueError as e:
        abort(400, str(e))

    return jsonify({
        "geometry": geometry.to_dict(),
        "acoustics": preview
    })


@app.route("/session/status", methods=["GET"])
def get_session_status():
    """Get the current session state."""
    return jsonify(get_controller().status())


@app.route("/session/start", methods=["POST"])
def start_session():
    """Save the form values and start audio routing."""
    controller = get_controller()
    raw = _form_from_request()
    try:
        state = controller.start(raw)
    except SessionStateError as e:
        abort(409, str(e))
    except ConfigValidationError as e:
        abort(400, str(e))
    except CommunicationError as e:
        abort(502, f"Failed to start audio routing: {str(e)}")

    status = controller.status()
    status["message"] = f"Audio routing {state.value}"
    return jsonify(status)


@app.route("/session/stop", methods=["POST"])
def stop_session():
    """Stop audio routing."""
    controller = get_controller()
    try:
        controller.stop()
    except SessionStateError as e:
        abort(409, str(e))

    status = controller.status()
    status["message"] = "Audio routing stopped"
    return jsonify(status)


@app.route("/view", methods=["GET"])
def get_view():
    """Position figure and control state for the saved form values."""
    controller = get_controller()
    form = controller.restore()
    status = controller.status()
    effects = reflect(form, controller.state)
    if status["last_error"]:
        effects.append(UiEffect("show_error", "session", status["last_error"]["message"]))
    view = render_effects(effects)
    view["state"] = status["state"]
    return jsonify(view)


@app.route("/", methods=["GET"])
def root():
    """API index."""
    routes = []
    for rule in app.url_map.iter_rules():
        if rule.endpoint == "static":
            continue
        routes.append({
            "methods": sorted(rule.methods - {"HEAD", "OPTIONS"}),
            "path": rule.rule
        })

    return jsonify({
        "message": "CTC Router Control API",
        "version": __version__,
        "endpoints": sorted(routes, key=lambda x: x["path"]),
        "usage": {
            "host": HOST,
            "port": PORT,
            "framework": "Flask with CORS support"
        }
    })


def signal_handler(signum, frame):
    """Handle shutdown signals: abort the session and save the configuration."""
    logger.info(f"Received signal {signum}, shutting down...")
    if _controller is not None:
        _controller.teardown()
    if _engine is not None:
        _engine.close()
    sys.exit(0)


def main():
    """Main entry point for the ctcrouter-server console script."""
    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    init_services()

    app.run(
        host=HOST,
        port=PORT,
        debug=False,
        threaded=True
    )
