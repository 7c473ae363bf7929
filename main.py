import os
import json
import logging
from dataclasses import dataclass
from typing import Optional

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import MethodNotAllowed

from fetch_retry import DEFAULT_DELAY_MS, DEFAULT_RETRIES, fetch_with_backoff, redact_key

# ----------------------
# Configuration
# ----------------------
GEMINI_API_URL = os.getenv(
    "GEMINI_API_URL",
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-2.5-flash-preview-05-20:generateContent",
)
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN") or None
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8080"))

API_KEY_MISSING = {"error": "API key is not configured."}
INTERNAL_ERROR = {"error": "Internal server error."}
GENERATE_PATH = "/api/generate"

# Logging
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("gemini-proxy")
# urllib3 debug lines carry the full upstream URL, key included
logging.getLogger("urllib3").setLevel(logging.INFO)


def _optional_number(name: str, cast):
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return cast(value)


@dataclass(frozen=True)
class ProxyConfig:
    """Settings for one proxy app. Built once, never mutated."""

    api_key: Optional[str] = None
    api_url: str = GEMINI_API_URL
    frontend_origin: Optional[str] = FRONTEND_ORIGIN
    retries: int = DEFAULT_RETRIES
    initial_delay_ms: int = DEFAULT_DELAY_MS
    max_delay_ms: Optional[int] = None
    timeout: Optional[float] = None

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        return cls(
            api_key=os.getenv("GEMINI_API_KEY") or None,
            api_url=GEMINI_API_URL,
            frontend_origin=FRONTEND_ORIGIN,
            retries=int(os.getenv("FETCH_RETRIES", str(DEFAULT_RETRIES))),
            initial_delay_ms=int(os.getenv("FETCH_INITIAL_DELAY_MS", str(DEFAULT_DELAY_MS))),
            max_delay_ms=_optional_number("FETCH_MAX_DELAY_MS", int),
            timeout=_optional_number("UPSTREAM_TIMEOUT", float),
        )

    def upstream_url(self) -> str:
        sep = "&" if "?" in self.api_url else "?"
        return f"{self.api_url}{sep}key={self.api_key}"


# ----------------------
# App Setup
# ----------------------
def create_app(config: Optional[ProxyConfig] = None) -> Flask:
    """Build the proxy app. Reads the environment only when no config is given."""
    if config is None:
        config = ProxyConfig.from_env()

    app = Flask(__name__)
    app.config["PROXY_CONFIG"] = config
    # relay upstream JSON in its original key order
    app.json.sort_keys = False
    # no CORS headers at all unless a browser origin is configured
    if config.frontend_origin:
        CORS(app, origins=[config.frontend_origin])

    if not config.api_key:
        logger.warning("GEMINI_API_KEY is not set; POST requests will fail")

    def reject(method: str):
        """Answer anything but a forwarded POST: missing key first, then 405."""
        if not config.api_key:
            logger.error("GEMINI_API_KEY is not configured")
            return jsonify(API_KEY_MISSING), 500
        return (
            f"Method {method} Not Allowed",
            405,
            {"Allow": "POST", "Content-Type": "text/plain; charset=utf-8"},
        )

    # ----------------------
    # Endpoints
    # ----------------------
    @app.route("/", methods=["GET"])
    def health_check():
        return jsonify({
            "status": "proxy-running",
            "api_key_configured": bool(config.api_key),
        }), 200

    @app.route(GENERATE_PATH, methods=["POST", "OPTIONS"], provide_automatic_options=False)
    def generate():
        if (
            request.method == "OPTIONS"
            and config.api_key
            and config.frontend_origin
            and "Access-Control-Request-Method" in request.headers
        ):
            # CORS preflight; flask-cors adds the Access-Control-* headers
            return "", 204, {"Allow": "POST"}
        if not config.api_key or request.method != "POST":
            return reject(request.method)

        payload = request.get_json(force=True, silent=True)
        try:
            body = json.dumps(payload, allow_nan=False).encode("utf-8")
        except ValueError as e:
            logger.error("Request body is not valid JSON: %s", e)
            return jsonify(INTERNAL_ERROR), 500

        url = config.upstream_url()
        logger.info("Forwarding request to %s", redact_key(url))

        try:
            resp = fetch_with_backoff(
                url,
                method="POST",
                retries=config.retries,
                delay=config.initial_delay_ms,
                max_delay=config.max_delay_ms,
                timeout=config.timeout,
                headers={"Content-Type": "application/json"},
                data=body,
            )
            data = resp.json()
        except Exception as e:
            logger.error("Error in proxy handler: %s", redact_key(repr(e)))
            return jsonify(INTERNAL_ERROR), 500

        return jsonify(data), 200

    @app.errorhandler(MethodNotAllowed)
    def method_not_allowed(e):
        # methods the route does not list (GET, PUT, TRACE, ...) end up here
        if request.path == GENERATE_PATH:
            return reject(request.method)
        return e

    return app


app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=PORT)
