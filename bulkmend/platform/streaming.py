"""
Streaming JSONL processing for bulk operation result files.

Result files can hold hundreds of thousands of lines, so they are read line by
line from the HTTP response and never materialized. Only what the caller's
line processor returns is retained.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

import httpx

from bulkmend.domain.errors import StreamFetchError
from bulkmend.domain.models import StreamCounts

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (raw line, decoded object, index among decoded lines) -> value to keep or None
LineProcessor = Callable[[str, Any, int], Optional[T]]

MAX_LOGGED_PARSE_ERRORS = 5
DEFAULT_MAX_ERROR_LINES = 50
DEFAULT_MAX_PREVIEW_BYTES = 10 * 1024
TRUNCATION_MARKER = "\n... (truncated)"

@dataclass
class StreamResult(Generic[T]):
    items: list[T] = field(default_factory=list)
    line_count: int = 0
    parse_errors: int = 0
    stopped_early: bool = False

async def stream_jsonl(
    http: httpx.AsyncClient,
    url: str,
    processor: LineProcessor,
    max_items: Optional[int] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> StreamResult:
    """
    Fetches `url` and feeds each non-blank line to `processor`.

    Malformed lines are counted and skipped. Once `max_items` values have been
    collected the response is closed without reading the rest.
    """
    result: StreamResult = StreamResult()

    logger.debug("Starting JSONL stream url=%s max_items=%s", url, max_items)

    try:
        async with http.stream("GET", url) as response:
            if not response.is_success:
                raise StreamFetchError(
                    f"Failed to fetch JSONL: {response.status_code} {response.reason_phrase}",
                    status_code=response.status_code,
                )

            async for line in response.aiter_lines():
                if not line.strip():
                    continue

                try:
                    obj = json.loads(line)
                except json.JSONDecodeError as e:
                    result.parse_errors += 1
                    if result.parse_errors <= MAX_LOGGED_PARSE_ERRORS:
                        logger.warning("Failed to parse JSONL line %s: %s (%r)", result.line_count, e, line[:100])
                    continue

                value = processor(line, obj, result.line_count)
                result.line_count += 1

                if value is not None:
                    result.items.append(value)

                if on_progress and result.line_count % 1000 == 0:
                    on_progress(result.line_count)

                if max_items is not None and len(result.items) >= max_items:
                    result.stopped_early = True
                    break
    except httpx.TransportError as e:
        raise StreamFetchError(f"JSONL stream interrupted: {e}") from e

    logger.debug(
        "JSONL stream completed lines=%s kept=%s parse_errors=%s",
        result.line_count, len(result.items), result.parse_errors,
    )
    return result

async def stream_product_ids(http: httpx.AsyncClient, url: str, max_items: int) -> list[str]:
    """Collects up to `max_items` record ids from a bulk query result file."""
    def extract_id(_line: str, obj: Any, _index: int) -> Optional[str]:
        if isinstance(obj, dict) and isinstance(obj.get("id"), str):
            return obj["id"]
        return None

    result = await stream_jsonl(http, url, extract_id, max_items=max_items)
    return result.items

def _has_entries(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0

def line_has_errors(obj: Any) -> bool:
    """True when a mutation result line reports an error for its item."""
    if not isinstance(obj, dict):
        return False
    if _has_entries(obj.get("errors")) or _has_entries(obj.get("userErrors")):
        return True

    # {"data": {"metafieldsSet": {"userErrors": [...]}}, "__lineNumber": 0}
    data = obj.get("data")
    if isinstance(data, dict):
        return any(isinstance(payload, dict) and _has_entries(payload.get("userErrors")) for payload in data.values())
    return False

def build_error_preview(error_lines: list[str], max_bytes: int = DEFAULT_MAX_PREVIEW_BYTES) -> Optional[str]:
    if not error_lines:
        return None

    preview = "\n".join(error_lines)
    encoded = preview.encode("utf-8")
    if len(encoded) > max_bytes:
        # Cut on a byte boundary and drop a trailing partial character.
        preview = encoded[:max_bytes].decode("utf-8", errors="ignore") + TRUNCATION_MARKER
    return preview

async def stream_result_counts(
    http: httpx.AsyncClient,
    url: str,
    max_error_lines: int = DEFAULT_MAX_ERROR_LINES,
    max_preview_bytes: int = DEFAULT_MAX_PREVIEW_BYTES,
) -> StreamCounts:
    """Counts successes and failures in a bulk mutation result file."""
    counts = StreamCounts()
    error_lines: list[str] = []

    def classify(line: str, obj: Any, _index: int) -> None:
        if line_has_errors(obj):
            counts.failed_count += 1
            if len(error_lines) < max_error_lines:
                error_lines.append(line)
        else:
            counts.success_count += 1
        return None

    def progress(lines: int) -> None:
        logger.debug("Processed %s result lines (failed so far: %s)", lines, counts.failed_count)

    result = await stream_jsonl(http, url, classify, on_progress=progress)

    counts.parse_errors = result.parse_errors
    counts.error_preview = build_error_preview(error_lines, max_preview_bytes)
    return counts
