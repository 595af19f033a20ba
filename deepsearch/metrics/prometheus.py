# pyright: reportMissingImports=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownVariableType=false
# pyright: reportUnknownArgumentType=false
# pyright: reportAttributeAccessIssue=false

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LLMChatMetricLabels:
    provider: str
    model: str


def _prom() -> object | None:
    try:
        import prometheus_client  # type: ignore

        return prometheus_client
    except Exception:
        return None


_PROM = _prom()

if _PROM is not None:
    Counter = _PROM.Counter
    Histogram = _PROM.Histogram
    generate_latest = _PROM.generate_latest
    CONTENT_TYPE_LATEST = _PROM.CONTENT_TYPE_LATEST
    REGISTRY = _PROM.REGISTRY

    _CHAT_REQUESTS = Counter(
        "deepsearch_chat_stream_requests_total",
        "Total chat streams executed.",
        labelnames=("provider", "model"),
    )
    _CHAT_ERRORS = Counter(
        "deepsearch_chat_stream_errors_total",
        "Total chat streams that ended with error.",
        labelnames=("provider", "model"),
    )
    _CHAT_INTERRUPTED = Counter(
        "deepsearch_chat_stream_interrupted_total",
        "Total chat streams interrupted by client disconnect.",
        labelnames=("provider", "model"),
    )

    _CHAT_LATENCY = Histogram(
        "deepsearch_chat_stream_latency_seconds",
        "End-to-end chat stream latency in seconds.",
        labelnames=("provider", "model"),
    )
    _CHAT_TTFT = Histogram(
        "deepsearch_chat_stream_ttft_seconds",
        "Time-to-first-token for chat streams in seconds.",
        labelnames=("provider", "model"),
    )

    _TOOL_CALLS = Counter(
        "deepsearch_chat_tool_calls_total",
        "Tool calls executed on behalf of the model.",
        labelnames=("provider", "model"),
    )
    _OUT_CHARS = Counter(
        "deepsearch_chat_stream_output_chars_total",
        "Total output chars emitted by chat streams.",
        labelnames=("provider", "model"),
    )

    _TOK_PROMPT = Counter(
        "deepsearch_chat_stream_prompt_tokens_total",
        "Total prompt tokens (when provider returns usage).",
        labelnames=("provider", "model"),
    )
    _TOK_COMPLETION = Counter(
        "deepsearch_chat_stream_completion_tokens_total",
        "Total completion tokens (when provider returns usage).",
        labelnames=("provider", "model"),
    )

    _QUOTA_REJECTIONS = Counter(
        "deepsearch_chat_quota_rejections_total",
        "Chat requests rejected with 429.",
        labelnames=("reason",),
    )

    _SCRAPE_CACHE = Counter(
        "deepsearch_scrape_cache_lookups_total",
        "Scrape cache lookups by outcome.",
        labelnames=("outcome",),
    )


def record_llm_chat_stream(
    *,
    labels: LLMChatMetricLabels,
    latency_ms: int,
    ttft_ms: int | None,
    tool_calls: int,
    output_chars: int,
    interrupted: bool,
    error: str | None,
    prompt_tokens: int | None,
    completion_tokens: int | None,
) -> None:
    if _PROM is None:
        return

    l = (labels.provider, labels.model)

    _CHAT_REQUESTS.labels(*l).inc()
    if error is not None and error != "":
        _CHAT_ERRORS.labels(*l).inc()
    if interrupted:
        _CHAT_INTERRUPTED.labels(*l).inc()

    if latency_ms >= 0:
        _CHAT_LATENCY.labels(*l).observe(float(latency_ms) / 1000.0)
    if ttft_ms is not None and ttft_ms >= 0:
        _CHAT_TTFT.labels(*l).observe(float(ttft_ms) / 1000.0)

    if tool_calls > 0:
        _TOOL_CALLS.labels(*l).inc(tool_calls)
    if output_chars > 0:
        _OUT_CHARS.labels(*l).inc(output_chars)

    if prompt_tokens is not None and prompt_tokens > 0:
        _TOK_PROMPT.labels(*l).inc(prompt_tokens)
    if completion_tokens is not None and completion_tokens > 0:
        _TOK_COMPLETION.labels(*l).inc(completion_tokens)


def record_quota_rejection(reason: str) -> None:
    if _PROM is None:
        return
    _QUOTA_REJECTIONS.labels(reason).inc()


def record_scrape_cache(*, hit: bool) -> None:
    if _PROM is None:
        return
    _SCRAPE_CACHE.labels("hit" if hit else "miss").inc()


def metrics_payload() -> tuple[bytes, str]:
    if _PROM is None:
        return b"", "text/plain; charset=utf-8"

    payload = generate_latest(REGISTRY)
    content_type = str(CONTENT_TYPE_LATEST)
    return payload, content_type
