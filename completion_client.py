"""
Upstream chat-completion calls through the OpenAI SDK.
One request per send(); no internal retries. The SDK call runs in a single worker thread so the
caller can enforce a hard wall-clock deadline and cancellation by closing the client.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

import openai
from openai import OpenAI

from errors import CompletionTimeoutError, GenerationCancelledError, MissingApiKeyError, NetworkError
from models import CompletionResult, DeliveryMode

logger = logging.getLogger(__name__)

# How often the waiting caller checks the deadline and the cancel flag
POLL_INTERVAL_SECONDS = 0.05


def fake_stream_chunks(text, size):
    """Split final text into display chunks for fake streaming."""
    size = max(1, int(size or 1))
    return [text[i:i + size] for i in range(0, len(text), size)]


class CompletionClient:
    def __init__(self, settings):
        self.settings = settings

    def send(self, request, route, timeout_ms=None, cancel_event=None, on_chunk=None, api_key=None):
        """
        Send one chat-completion request and return CompletionResult(status_code, text).
        text is always the final assembled content; on_chunk (if given) sees it piece by piece,
        for real and fake streaming alike. Non-2xx upstream answers come back as results, not errors.
        Raises MissingApiKeyError, CompletionTimeoutError, GenerationCancelledError or NetworkError.
        """
        key = api_key or self.settings.api_key
        if not key:
            logger.error("completion: no API key configured or supplied")
            raise MissingApiKeyError("OpenAI API key not set. Add OPENAI_API_KEY to .env or send a Bearer key.")
        timeout_ms = timeout_ms or self.settings.timeout_ms
        timeout_s = timeout_ms / 1000.0
        deadline = time.monotonic() + timeout_s
        closed = threading.Event()

        def emit(piece):
            if on_chunk is not None and piece and not closed.is_set():
                on_chunk(piece)

        client = OpenAI(
            api_key=key,
            base_url=self.settings.base_url,
            timeout=timeout_s,
            max_retries=0,
        )
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="completion")
        logger.info(
            "completion: model=%s mode=%s timeout=%dms",
            route.upstream_model, route.delivery_mode.value, timeout_ms,
        )
        started = time.monotonic()
        try:
            future = executor.submit(self._call_upstream, client, request, route, emit, closed)
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("completion: cancelled after %.1fs", time.monotonic() - started)
                    raise GenerationCancelledError("Generation was cancelled")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("completion: timed out after %dms", timeout_ms)
                    raise CompletionTimeoutError("Request timed out after %d ms" % timeout_ms, timeout_ms=timeout_ms)
                try:
                    result = future.result(timeout=min(remaining, POLL_INTERVAL_SECONDS))
                except FutureTimeout:
                    continue
                logger.info(
                    "completion: status=%s chars=%d in %.1fs",
                    result.status_code, len(result.text), time.monotonic() - started,
                )
                return result
        finally:
            # Stop callbacks first, then tear the connection down
            closed.set()
            client.close()
            executor.shutdown(wait=False)

    def _call_upstream(self, client, request, route, emit, closed):
        kwargs = request.to_payload()
        kwargs["model"] = route.upstream_model
        kwargs["stream"] = route.delivery_mode is DeliveryMode.REAL_STREAM
        try:
            if kwargs["stream"]:
                return CompletionResult(200, self._read_stream(client, kwargs, emit, closed))
            completion = client.chat.completions.create(**kwargs)
            text = ""
            if completion.choices:
                text = completion.choices[0].message.content or ""
            if route.delivery_mode is DeliveryMode.FAKE_STREAM:
                for piece in fake_stream_chunks(text, self.settings.fake_stream_chunk_size):
                    emit(piece)
            return CompletionResult(200, text)
        except openai.APIStatusError as e:
            body = e.response.text if e.response is not None else str(e)
            logger.warning("completion: upstream status %s", e.status_code)
            return CompletionResult(e.status_code, body)
        except openai.APITimeoutError as e:
            raise CompletionTimeoutError("Upstream read timed out: %s" % e) from e
        except openai.APIConnectionError as e:
            raise NetworkError("Upstream connection failed: %s" % e, cause=e) from e

    def _read_stream(self, client, kwargs, emit, closed):
        stream = client.chat.completions.create(**kwargs)
        parts = []
        try:
            for chunk in stream:
                if closed.is_set():
                    raise NetworkError("Stream closed before completion")
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    parts.append(delta)
                    emit(delta)
        finally:
            stream.close()
        return "".join(parts)
