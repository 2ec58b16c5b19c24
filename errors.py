"""
Error taxonomy for the table generation pipeline.
Every failure carries enough context (row, column, raw text) for a precise user-facing message.
"""

# Upstream statuses worth another attempt: rate limit and gateway/proxy timeouts
RETRYABLE_STATUSES = frozenset({429, 502, 503, 504, 524})

_RAW_PREVIEW = 500


class TableGenerationError(Exception):
    """Base class. `code` is the machine-readable kind used in JSON responses."""

    code = "generation_error"

    def __init__(self, message, raw_text=None):
        super().__init__(message)
        self.message = message
        self.raw_text = raw_text

    def to_dict(self):
        out = {"error": self.message, "code": self.code}
        if self.raw_text:
            out["raw_text"] = self.raw_text[:_RAW_PREVIEW]
        return out


# ---------------------------------------------------------------------------
# Caller input
# ---------------------------------------------------------------------------

class InvalidInputError(TableGenerationError):
    code = "invalid_input"


class GenerationBusyError(TableGenerationError):
    """A generation is already running for this session."""

    code = "generation_in_progress"


class GenerationCancelledError(TableGenerationError):
    code = "cancelled"


class MissingApiKeyError(TableGenerationError):
    """No key configured and none supplied by the caller; nothing is sent upstream."""

    code = "missing_api_key"


# ---------------------------------------------------------------------------
# Transport (retried by the caller, never by the client)
# ---------------------------------------------------------------------------

class TransportError(TableGenerationError):
    code = "transport_error"


class NetworkError(TransportError):
    code = "network_error"

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


class CompletionTimeoutError(TransportError):
    code = "timeout"

    def __init__(self, message, timeout_ms=None):
        super().__init__(message)
        self.timeout_ms = timeout_ms


class UpstreamStatusError(TransportError):
    """Upstream answered with a non-2xx status."""

    code = "upstream_error"

    def __init__(self, status_code, body=""):
        super().__init__("Upstream returned %s: %s" % (status_code, (body or "")[:200]), raw_text=body)
        self.status_code = status_code

    @property
    def retryable(self):
        return self.status_code in RETRYABLE_STATUSES

    def to_dict(self):
        out = super().to_dict()
        out["status_code"] = self.status_code
        return out


class UpstreamAuthError(UpstreamStatusError):
    code = "upstream_auth"

    @property
    def retryable(self):
        return False


# ---------------------------------------------------------------------------
# Response quality (one stricter retry at most)
# ---------------------------------------------------------------------------

class ResponseQualityError(TableGenerationError):
    code = "bad_response"


class NoJsonFoundError(ResponseQualityError):
    code = "no_json"


class MalformedJsonError(ResponseQualityError):
    code = "malformed_json"

    def __init__(self, message, raw_text=None, position=None):
        super().__init__(message, raw_text=raw_text)
        self.position = position

    def to_dict(self):
        out = super().to_dict()
        if self.position is not None:
            out["position"] = self.position
        return out


class SchemaError(ResponseQualityError):
    """Payload does not match the table schema. row_index is 0-based."""

    code = "schema_error"

    def __init__(self, message, row_index=None, column=None, raw_value=None, raw_text=None):
        super().__init__(message, raw_text=raw_text)
        self.row_index = row_index
        self.column = column
        self.raw_value = raw_value

    def to_dict(self):
        out = super().to_dict()
        if self.row_index is not None:
            out["row_index"] = self.row_index
        if self.column is not None:
            out["column"] = self.column
        if self.raw_value is not None:
            out["raw_value"] = repr(self.raw_value)[:200]
        return out


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

class UnsupportedSchemaError(TableGenerationError):
    """Table has no recognizable attendance columns; shown as 'no statistics available'."""

    code = "unsupported_schema"
