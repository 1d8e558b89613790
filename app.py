import json
import logging
from typing import Optional

from flask import Flask, Response, current_app, jsonify, request
from werkzeug.exceptions import MethodNotAllowed

from config import Settings, configure_logging, load_settings
from inference import InferenceBinding, build_binding
from stem_service import OCRFailedError, ensure_vision_license, solve_image

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

USAGE_HINT = "Use POST with JSON: { imageDataUrl }"


def text_response(message: str, status: int) -> Response:
    return Response(message, status=status, headers=CORS_HEADERS, mimetype='text/plain')


def json_response(payload: dict, status: int = 200) -> Response:
    body = json.dumps(payload, indent=2, ensure_ascii=False)
    return Response(body, status=status, headers=CORS_HEADERS, mimetype='application/json')


def parse_image_data_url(raw_body: bytes):
    """
    Pull ``imageDataUrl`` out of a request body.
    Returns:
        (image_data_url, None) on success, (None, error_response) otherwise
    """
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None, text_response("Invalid JSON body", 400)

    image_data_url = body.get('imageDataUrl') if isinstance(body, dict) else None
    if not image_data_url or not isinstance(image_data_url, str) or not image_data_url.startswith('data:image'):
        return None, text_response("Missing or invalid imageDataUrl", 400)

    return image_data_url, None


def create_app(settings: Optional[Settings] = None, binding: Optional[InferenceBinding] = None) -> Flask:
    """
    Build the Flask application.
    Args:
        settings: Configuration, read from the environment when omitted
        binding: Inference backend, built from settings when omitted
    """
    app = Flask(__name__)
    if binding is None:
        binding = build_binding(settings or load_settings())
    app.extensions['inference'] = binding

    @app.before_request
    def accept_vision_license():
        if request.endpoint == 'health_check':
            return None
        ensure_vision_license(current_app.extensions['inference'])
        return None

    @app.route('/', methods=['POST', 'OPTIONS'])
    def solve():
        if request.method == 'OPTIONS':
            return Response(status=204, headers=CORS_HEADERS)

        image_data_url, error = parse_image_data_url(request.get_data())
        if error is not None:
            logger.warning("Rejected request: %s", error.get_data(as_text=True))
            return error

        try:
            outcome = solve_image(current_app.extensions['inference'], image_data_url)
            return json_response(outcome.to_dict())
        except OCRFailedError:
            logger.error("OCR returned no text")
            return text_response("OCR failed", 500)
        except Exception as e:
            logger.exception("Solving failed")
            return text_response(f"Server error: {str(e)}", 500)

    @app.route('/health', methods=['GET'])
    def health_check():
        return jsonify({'status': 'healthy'}), 200

    @app.errorhandler(MethodNotAllowed)
    def usage_hint(e):
        return text_response(USAGE_HINT, 400)

    return app


if __name__ == '__main__':
    settings = load_settings()
    configure_logging(settings.log_level)
    app = create_app(settings)
    app.run(host='0.0.0.0', port=settings.port)
