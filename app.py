"""
AI table generation service. Gateway at /api/v1/chat/completions, table endpoints under /api/tables.
"""
import logging
import os

from flask import Flask, jsonify

from ai_service import SessionRegistry, TableGenerationService
from config import SECRET_KEY, get_generation_settings
from routes.main import bp as main_bp

# Structured logging for generation and routes
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def create_app(settings=None, service=None):
    """Build the Flask app. Tests pass their own settings and a service with a fake client."""
    settings = settings or get_generation_settings()
    service = service or TableGenerationService(settings)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = SECRET_KEY
    app.config["PERMANENT_SESSION_LIFETIME"] = 86400  # 1 day
    app.config["GENERATION_SETTINGS"] = settings
    app.extensions["table_generation"] = service
    app.extensions["table_sessions"] = SessionRegistry(service)
    app.register_blueprint(main_bp)

    @app.route("/health")
    def health():
        return jsonify({"ok": True, "model": settings.default_model, "key_loaded": bool(settings.api_key)})

    if settings.api_key:
        logger.info("KEY LOADED: True (upstream %s, default model %s)", settings.base_url, settings.default_model)
    else:
        logger.warning("KEY LOADED: False. Set OPENAI_API_KEY in .env or pass a Bearer key to the gateway.")
    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    print(f"Table generation service ready. Open http://127.0.0.1:{port}/health")
    create_app().run(host="0.0.0.0", port=port, debug=True, threaded=True)
