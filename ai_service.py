"""
AI service layer for table generation.
Runs one generation chain: prompt -> model route -> completion -> extract -> validate -> statistics.
Retry policy lives here (the completion client never retries):
transport failures and gateway statuses get a few attempts with linear backoff,
an unusable answer gets exactly one stricter follow-up.
"""
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from completion_client import CompletionClient
from errors import (
    CompletionTimeoutError,
    GenerationBusyError,
    GenerationCancelledError,
    InvalidInputError,
    NetworkError,
    ResponseQualityError,
    TableGenerationError,
    UnsupportedSchemaError,
    UpstreamAuthError,
    UpstreamStatusError,
)
from model_resolver import ModelResolver
from models import AttendanceStatistics, ChatMessage, CompletionRequest, DeliveryMode, Table
from prompt_builder import PromptBuilder
from statistics_engine import compute_statistics
from table_extractor import extract_table_payload
from table_validator import validate_table

logger = logging.getLogger(__name__)

# Messages replayed into modify prompts (user/assistant pairs)
MAX_HISTORY_MESSAGES = 10

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True)
class GenerationOutcome:
    status: str
    table: Optional[Table] = None
    statistics: Optional[AttendanceStatistics] = None
    statistics_error: Optional[str] = None
    error: Optional[TableGenerationError] = None

    def to_dict(self):
        out = {"status": self.status}
        if self.table is not None:
            out["table"] = self.table.to_dict()
        if self.statistics is not None:
            out["statistics"] = self.statistics.to_dict()
        if self.statistics_error:
            out["statistics_error"] = self.statistics_error
        if self.error is not None:
            out.update(self.error.to_dict())
        return out


class TableGenerationService:
    """Stateless generation chain; one instance can serve many sessions."""

    def __init__(self, settings, client=None, sleep=time.sleep):
        self.settings = settings
        self.prompt_builder = PromptBuilder(settings)
        self.resolver = ModelResolver(settings)
        self.client = client or CompletionClient(settings)
        self._sleep = sleep

    def supports_json_mode(self, model):
        name = (model or "").lower()
        return any(m.lower() in name for m in self.settings.json_mode_models)

    def build_request(self, messages, route):
        return CompletionRequest(
            model=route.upstream_model,
            messages=messages,
            stream=route.delivery_mode is DeliveryMode.REAL_STREAM,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            json_mode=self.supports_json_mode(route.upstream_model),
        )

    def generate(self, description, template=None, model=None, existing_table=None, history=None,
                 stream=False, cancel_event=None, on_chunk=None):
        """
        Generate (or modify) a table from a natural-language description. Returns a Table.
        Raises the TableGenerationError subclasses of errors.py; GenerationCancelledError on cancel.
        """
        messages = self.prompt_builder.build(description, template=template, existing_table=existing_table, history=history)
        route = self.resolver.resolve(model or "", stream=stream)
        logger.info(
            "generate: model=%s mode=%s template=%s modify=%s",
            route.upstream_model, route.delivery_mode.value,
            template.value if template else None, existing_table is not None,
        )
        quality_retry_used = False
        while True:
            text = self._complete(self.build_request(messages, route), route, cancel_event, on_chunk)
            try:
                payload = extract_table_payload(text)
                return validate_table(payload, expected_template=template)
            except ResponseQualityError as e:
                if quality_retry_used:
                    logger.warning("generate: response still unusable after follow-up: %s", e.message)
                    raise
                quality_retry_used = True
                logger.warning("generate: unusable response (%s), asking again. Raw: %r", e.code, (text or "")[:200])
                messages = self.prompt_builder.build_retry(messages, text, e)

    def _complete(self, request, route, cancel_event, on_chunk):
        """Send with transport retries; return the response text."""
        max_attempts = max(1, self.settings.max_attempts)
        for attempt in range(1, max_attempts + 1):
            try:
                result = self.client.send(request, route, cancel_event=cancel_event, on_chunk=on_chunk)
            except (NetworkError, CompletionTimeoutError) as e:
                error = e
            else:
                if result.ok:
                    return result.text
                if result.status_code in (401, 403):
                    raise UpstreamAuthError(result.status_code, result.text)
                error = UpstreamStatusError(result.status_code, result.text)
                if not error.retryable:
                    raise error
            if attempt >= max_attempts:
                logger.error("generate: giving up after %d attempts: %s", attempt, error.message)
                raise error
            delay = attempt * self.settings.retry_backoff_seconds
            logger.warning("generate: attempt %d/%d failed (%s), retrying in %.1fs", attempt, max_attempts, error.code, delay)
            if self._wait(delay, cancel_event):
                raise GenerationCancelledError("Generation was cancelled")

    def _wait(self, delay, cancel_event):
        """Back off; True if cancelled meanwhile."""
        if cancel_event is not None:
            return cancel_event.wait(delay)
        if delay > 0:
            self._sleep(delay)
        return False


# ---------------------------------------------------------------------------
# Per-session state: current table, statistics, in-flight guard
# ---------------------------------------------------------------------------

class GenerationSession:
    """
    One user's working table. At most one generation runs at a time; a failed or cancelled
    generation leaves the previous table and statistics untouched.
    """

    def __init__(self, service):
        self.service = service
        self._lock = threading.Lock()
        self._cancel_event = None
        self.status = STATUS_IDLE
        self.table = None
        self.statistics = None
        self.statistics_error = None
        self.last_error = None
        self.history = []

    @property
    def busy(self):
        return self._lock.locked()

    def generate(self, description, template=None, model=None, modify=False, stream=False):
        """Run a chain for this session. Returns GenerationOutcome (succeeded/cancelled); raises on failure."""
        if not self._lock.acquire(blocking=False):
            raise GenerationBusyError("A table is already being generated for this session")
        cancel_event = threading.Event()
        self._cancel_event = cancel_event
        try:
            existing = None
            if modify:
                if self.table is None:
                    raise InvalidInputError("There is no table to modify yet")
                existing = self.table
            self.status = STATUS_RUNNING
            try:
                table = self.service.generate(
                    description,
                    template=template,
                    model=model,
                    existing_table=existing,
                    history=list(self.history) if modify else None,
                    stream=stream,
                    cancel_event=cancel_event,
                )
            except GenerationCancelledError as e:
                self.status = STATUS_CANCELLED
                logger.info("session: generation cancelled")
                return GenerationOutcome(STATUS_CANCELLED, error=e)
            except TableGenerationError as e:
                self.status = STATUS_FAILED
                self.last_error = e
                raise
            self._replace_table(table, description, modify)
            return self.outcome()
        finally:
            self._cancel_event = None
            self._lock.release()

    def cancel(self):
        """Ask the running chain to stop. Returns False when nothing is running."""
        event = self._cancel_event
        if event is None:
            return False
        event.set()
        return True

    def outcome(self):
        return GenerationOutcome(
            self.status,
            table=self.table,
            statistics=self.statistics,
            statistics_error=self.statistics_error,
            error=self.last_error if self.status == STATUS_FAILED else None,
        )

    def _replace_table(self, table, description, modify):
        try:
            statistics, statistics_error = compute_statistics(table), None
        except UnsupportedSchemaError as e:
            statistics, statistics_error = None, e.message
        turn = [ChatMessage("user", description), ChatMessage("assistant", table.to_json())]
        history = (self.history if modify else []) + turn
        self.history = history[-MAX_HISTORY_MESSAGES:]
        self.table = table
        self.statistics = statistics
        self.statistics_error = statistics_error
        self.last_error = None
        self.status = STATUS_SUCCEEDED


class SessionRegistry:
    """
    In-memory sessions keyed by id; nothing outlives the process.
    Idle sessions expire after settings.session_ttl_seconds and the least recently used are dropped
    past settings.max_sessions. A running session is never dropped.
    """

    def __init__(self, service, clock=time.monotonic):
        self.service = service
        self.ttl_seconds = service.settings.session_ttl_seconds
        self.max_sessions = service.settings.max_sessions
        self._clock = clock
        self._sessions = OrderedDict()  # id -> (session, last_used)
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def get(self, session_id):
        """Return the session for session_id, creating it if needed."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            entry = self._sessions.pop(session_id, None)
            session = entry[0] if entry else GenerationSession(self.service)
            self._sessions[session_id] = (session, now)
            self._trim()
            return session

    def peek(self, session_id):
        """Return an existing session or None; never creates one."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            entry = self._sessions.pop(session_id, None)
            if entry is None:
                return None
            self._sessions[session_id] = (entry[0], now)
            return entry[0]

    def _expire(self, now):
        expired = [
            sid for sid, (session, last_used) in self._sessions.items()
            if now - last_used > self.ttl_seconds and not session.busy
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("session: expired %d idle sessions", len(expired))

    def _trim(self):
        # Oldest first; the entry just touched is never the one dropped
        for sid in list(self._sessions)[:-1]:
            if len(self._sessions) <= self.max_sessions:
                break
            if not self._sessions[sid][0].busy:
                del self._sessions[sid]
