"""
HTTP surface: OpenAI-compatible gateway (model routing + fake streaming) and the table generation endpoints.
"""
import json
import logging
import queue
import threading
import time
import uuid

from flask import Blueprint, Response, current_app, jsonify, request, session, stream_with_context

from ai_service import STATUS_IDLE
from errors import (
    CompletionTimeoutError,
    GenerationBusyError,
    InvalidInputError,
    MissingApiKeyError,
    NetworkError,
    ResponseQualityError,
    TableGenerationError,
    TransportError,
    UnsupportedSchemaError,
    UpstreamAuthError,
)
from models import ChatMessage, CompletionRequest, DeliveryMode, TEMPLATE_HEADERS, TEMPLATE_NAMES, TemplateType
from stats_display import statistics_levels

logger = logging.getLogger(__name__)


bp = Blueprint("main", __name__, url_prefix="/")

# Most specific first
_HTTP_STATUS = (
    (InvalidInputError, 400),
    (UpstreamAuthError, 401),
    (MissingApiKeyError, 401),
    (GenerationBusyError, 409),
    (UnsupportedSchemaError, 422),
    (CompletionTimeoutError, 504),
    (TransportError, 502),
    (ResponseQualityError, 502),
)


def _settings():
    return current_app.config["GENERATION_SETTINGS"]


def _service():
    return current_app.extensions["table_generation"]


def _http_status(error):
    for cls, status in _HTTP_STATUS:
        if isinstance(error, cls):
            return status
    return 500


# ---------------------------------------------------------------------------
# Rate limit (per IP, AI endpoints only)
# ---------------------------------------------------------------------------

_chat_request_times = {}  # ip -> list of timestamps
_rate_lock = threading.Lock()


def _chat_rate_limit_exceeded(ip):
    """Return True if this IP would exceed per-minute or daily cap."""
    settings = _settings()
    now = time.time()
    one_min_ago = now - 60
    one_day_ago = now - 86400
    with _rate_lock:
        times = _chat_request_times.setdefault(ip, [])
        times[:] = [t for t in times if t > one_day_ago]
        per_min = sum(1 for t in times if t > one_min_ago)
        daily = len(times)
        if per_min >= settings.rate_limit_per_minute or (settings.daily_cap and daily >= settings.daily_cap):
            return True
        times.append(now)
    return False


def _sanitize_prompt(text):
    """Strip and drop control chars; length is checked by the prompt builder."""
    if not text or not isinstance(text, str):
        return ""
    return "".join(c for c in text.strip() if c.isprintable() or c in "\n\r\t").strip()


# ---------------------------------------------------------------------------
# OpenAI-compatible gateway
# ---------------------------------------------------------------------------

def _openai_error(message, status, error_type):
    return jsonify({"error": {"message": message, "type": error_type}}), status


def _bearer_key():
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


def _completion_body(model, text):
    return {
        "id": "chatcmpl-" + uuid.uuid4().hex,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": text},
            "finish_reason": "stop",
        }],
    }


def _chunk_body(completion_id, created, model, delta, finish_reason=None):
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def _sse(payload):
    return "data: %s\n\n" % json.dumps(payload, ensure_ascii=False)


def _sse_stream(client, chat_request, route, api_key):
    """Run the upstream call in a thread and relay its chunks as SSE lines."""
    chunks = queue.Queue()
    done = object()
    cancel_event = threading.Event()
    outcome = {}

    def worker():
        try:
            outcome["result"] = client.send(chat_request, route, cancel_event=cancel_event, on_chunk=chunks.put, api_key=api_key)
        except TableGenerationError as e:
            outcome["error"] = e
        except Exception as e:
            logger.exception("gateway: stream worker failed")
            outcome["error"] = NetworkError(str(e), cause=e)
        finally:
            chunks.put(done)

    threading.Thread(target=worker, name="gateway-stream", daemon=True).start()
    completion_id = "chatcmpl-" + uuid.uuid4().hex
    created = int(time.time())
    model = route.upstream_model
    finished = False
    try:
        yield _sse(_chunk_body(completion_id, created, model, {"role": "assistant"}))
        while True:
            piece = chunks.get()
            if piece is done:
                break
            yield _sse(_chunk_body(completion_id, created, model, {"content": piece}))
        finished = True
        error = outcome.get("error")
        result = outcome.get("result")
        if error is not None:
            yield _sse({"error": {"message": error.message, "type": error.code}})
        elif result is not None and not result.ok:
            yield _sse({"error": {"message": result.text[:500], "type": "upstream_error", "code": result.status_code}})
        else:
            yield _sse(_chunk_body(completion_id, created, model, {}, finish_reason="stop"))
        yield "data: [DONE]\n\n"
    finally:
        if not finished:
            # Client went away mid-stream
            cancel_event.set()


@bp.route("/api/v1/chat/completions", methods=["POST"])
def api_chat_completions():
    ip = request.remote_addr or "0.0.0.0"
    if _chat_rate_limit_exceeded(ip):
        logger.warning("gateway: rate limit exceeded for IP %s", ip)
        return _openai_error("AI usage limit reached. Please try later.", 429, "rate_limit")

    data = request.get_json(silent=True) or {}
    service = _service()
    stream = bool(data.get("stream"))
    try:
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raise InvalidInputError("messages must be a list")
        messages = [ChatMessage.from_dict(m) for m in raw_messages]
        route = service.resolver.resolve(data.get("model") or "", stream=stream)
        chat_request = CompletionRequest(
            model=route.upstream_model,
            messages=messages,
            stream=route.delivery_mode is DeliveryMode.REAL_STREAM,
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens"),
        )
    except InvalidInputError as e:
        return _openai_error(e.message, 400, "invalid_request_error")

    logger.info("gateway: %r -> %s (%s)", data.get("model"), route.upstream_model, route.delivery_mode.value)
    api_key = _bearer_key()
    if route.delivery_mode is DeliveryMode.NON_STREAM:
        try:
            result = service.client.send(chat_request, route, api_key=api_key)
        except (TransportError, MissingApiKeyError) as e:
            return _openai_error(e.message, _http_status(e), e.code)
        if not result.ok:
            return Response(result.text, status=result.status_code, mimetype="application/json")
        return jsonify(_completion_body(route.upstream_model, result.text))

    return Response(
        stream_with_context(_sse_stream(service.client, chat_request, route, api_key)),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ---------------------------------------------------------------------------
# Table generation
# ---------------------------------------------------------------------------

def _current_session():
    sid = session.get("table_session")
    if not sid:
        sid = uuid.uuid4().hex
        session["table_session"] = sid
    return current_app.extensions["table_sessions"].get(sid)


def _existing_session():
    """Session for this cookie if one is held; read-only endpoints never create one."""
    sid = session.get("table_session")
    if not sid:
        return None
    return current_app.extensions["table_sessions"].peek(sid)


@bp.route("/api/templates", methods=["GET"])
def api_templates():
    return jsonify([
        {"type": t.value, "name": TEMPLATE_NAMES[t], "headers": list(TEMPLATE_HEADERS[t])}
        for t in TemplateType
    ])


@bp.route("/api/tables/generate", methods=["POST"])
def api_tables_generate():
    ip = request.remote_addr or "0.0.0.0"
    if _chat_rate_limit_exceeded(ip):
        logger.warning("tables: rate limit exceeded for IP %s", ip)
        return jsonify({"error": "AI usage limit reached. Please try later.", "code": "rate_limit"}), 429

    data = request.get_json(silent=True) or {}
    table_session = _current_session()
    try:
        mode = (data.get("mode") or "create").strip().lower()
        if mode not in ("create", "modify"):
            raise InvalidInputError("mode must be 'create' or 'modify'")
        outcome = table_session.generate(
            _sanitize_prompt(data.get("prompt")),
            template=TemplateType.parse(data.get("template")),
            model=data.get("model"),
            modify=mode == "modify",
            stream=bool(data.get("stream")),
        )
    except TableGenerationError as e:
        status = _http_status(e)
        if status >= 500:
            logger.error("tables: generation failed: %s", e.message)
        body = e.to_dict()
        body["status"] = "failed"
        return jsonify(body), status
    return jsonify(outcome.to_dict())


@bp.route("/api/tables/cancel", methods=["POST"])
def api_tables_cancel():
    table_session = _existing_session()
    return jsonify({"cancelled": table_session.cancel() if table_session else False})


@bp.route("/api/tables/current", methods=["GET"])
def api_tables_current():
    table_session = _existing_session()
    if table_session is None:
        return jsonify({"status": STATUS_IDLE, "busy": False})
    body = table_session.outcome().to_dict()
    body["busy"] = table_session.busy
    return jsonify(body)


@bp.route("/api/tables/statistics", methods=["GET"])
def api_tables_statistics():
    table_session = _existing_session()
    if table_session is None or table_session.table is None:
        return jsonify({"error": "No table generated yet", "code": "no_table"}), 404
    if table_session.statistics is None:
        return jsonify({
            "error": table_session.statistics_error or "No statistics available",
            "code": UnsupportedSchemaError.code,
            "message": "No statistics available for this table",
        }), 422
    stats = table_session.statistics
    return jsonify({"statistics": stats.to_dict(), "levels": statistics_levels(stats, _settings())})
