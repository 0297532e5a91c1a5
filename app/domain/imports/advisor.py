"""
Mapping advisor: suggests which equipment field each uploaded column holds.

The advisor is best-effort. Its answer is sanitized, only offered to the
operator as an editable default, and waited on for a bounded time; when it
fails, times out, or is disabled every column defaults to ``__new__`` with
confidence ``none``.
"""
import json
import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage

from app.core.config import Settings
from app.domain.imports.mapping import default_mapping, normalize_confidence, sanitize_suggestion
from app.domain.imports.sessions import ImportSession, ImportSessionStore

logger = logging.getLogger(__name__)


class AdvisorUnavailableError(Exception):
    """Raised when the advisor cannot produce a suggestion."""


@dataclass
class AdvisorSuggestion:
    mapping: Dict[str, Any]
    confidence: str
    notes: str = ""


class MappingAdvisor:
    """Interface for column mapping suggestion services."""

    name = "advisor"

    def suggest(
        self,
        headers: Sequence[str],
        preview_rows: Sequence[Mapping[str, str]],
        catalog: Mapping[str, str],
    ) -> AdvisorSuggestion:
        raise NotImplementedError


class KeywordMappingAdvisor(MappingAdvisor):
    """Deterministic header keyword matching; needs no external service."""

    name = "keywords"

    # Checked in order; the first matching rule wins for a header.
    RULES = (
        ("name", lambda h: "name" in h or h in ("equipment", "item")),
        ("model", lambda h: "model" in h),
        ("serial_number", lambda h: "serial" in h or h in ("sn", "serialno")),
        ("manufacturer", lambda h: "manufacturer" in h or "make" in h or h in ("brand", "vendor")),
        ("location", lambda h: "location" in h or h in ("loc", "site", "room")),
        ("description", lambda h: "description" in h or "desc" in h or h in ("notes", "details")),
    )

    def suggest(self, headers, preview_rows, catalog):
        mapping: Dict[str, Any] = {}
        for header in headers:
            compact = re.sub(r"[_\s-]", "", header.lower())
            for field_name, matches in self.RULES:
                if field_name in catalog and matches(compact):
                    mapping[header] = field_name
                    break

        matched = len(mapping)
        return AdvisorSuggestion(
            mapping=mapping,
            confidence="medium" if matched else "low",
            notes=f"Matched {matched} of {len(headers)} columns by header keywords",
        )


MAPPING_PROMPT = """You are helping map spreadsheet columns to equipment database fields for an import.

Analyze these spreadsheet columns and their sample values:

{sample_data}

Available equipment fields to map to:
{field_list}

For each spreadsheet column, determine the best matching equipment field based on:
1. The column header name
2. The actual data values in the samples
3. The meaning and purpose of each field

Respond in this exact JSON format (no markdown, just the JSON object):
{{
  "mappings": {{
    "Column Header 1": "field_name or null",
    "Column Header 2": "field_name or null"
  }},
  "confidence": "high/medium/low",
  "notes": "Brief explanation of any uncertain mappings"
}}

Use null for columns that don't match any equipment field. Each equipment field should only be mapped once (to its best match)."""


class AnthropicMappingAdvisor(MappingAdvisor):
    """Claude-backed advisor using a single LLM call per upload."""

    name = "anthropic"

    def __init__(self, api_key: str, model: str, max_tokens: int = 1024, timeout: Optional[float] = None):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout

    def build_prompt(
        self,
        headers: Sequence[str],
        preview_rows: Sequence[Mapping[str, str]],
        catalog: Mapping[str, str],
    ) -> str:
        columns = []
        for header in headers:
            samples = [row.get(header, "") for row in preview_rows]
            samples = [value for value in samples if value and value.strip()][:3]
            columns.append(
                f'Column: "{header}"\nSample values: {", ".join(samples) if samples else "(empty)"}'
            )
        field_list = "\n".join(f"- {name}: {description}" for name, description in catalog.items())
        return MAPPING_PROMPT.format(sample_data="\n\n".join(columns), field_list=field_list)

    @staticmethod
    def _response_text(content: Any) -> str:
        if isinstance(content, str):
            return content
        parts = []
        for block in content or []:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
            elif isinstance(block, str):
                parts.append(block)
        return "".join(parts)

    def parse_response(self, content: Any) -> AdvisorSuggestion:
        text_content = self._response_text(content).strip()
        json_match = re.search(r"\{[\s\S]*\}", text_content)
        if not json_match:
            raise AdvisorUnavailableError("Could not parse advisor response")
        try:
            payload = json.loads(json_match.group(0))
        except json.JSONDecodeError as e:
            raise AdvisorUnavailableError(f"Could not parse advisor response: {e}") from e

        mappings = payload.get("mappings") or {}
        if not isinstance(mappings, dict):
            raise AdvisorUnavailableError("Advisor response has no mappings object")
        return AdvisorSuggestion(
            mapping=mappings,
            confidence=normalize_confidence(payload.get("confidence")),
            notes=str(payload.get("notes") or ""),
        )

    def suggest(self, headers, preview_rows, catalog):
        if not self.api_key:
            raise AdvisorUnavailableError(
                "Anthropic API key not configured. Set ANTHROPIC_API_KEY to enable mapping suggestions."
            )

        llm = ChatAnthropic(
            model=self.model,
            api_key=self.api_key,
            temperature=0,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
            max_retries=0,
        )
        response = llm.invoke([HumanMessage(content=self.build_prompt(headers, preview_rows, catalog))])
        return self.parse_response(response.content)


def build_mapping_advisor(settings: Settings) -> Optional[MappingAdvisor]:
    """Create the advisor selected by ``settings.mapping_advisor`` (None when disabled)."""
    choice = (settings.mapping_advisor or "").strip().lower()
    if choice == "anthropic":
        return AnthropicMappingAdvisor(
            api_key=(settings.anthropic_api_key or "").strip(),
            model=settings.advisor_model,
            max_tokens=settings.advisor_max_tokens,
            timeout=settings.advisor_wait_seconds,
        )
    if choice == "keywords":
        return KeywordMappingAdvisor()
    if choice not in ("disabled", "none", ""):
        logger.warning(f"Unknown mapping advisor '{settings.mapping_advisor}'; advisor disabled")
    return None


_advisor_pool: Optional[ThreadPoolExecutor] = None
_advisor_pool_lock = threading.Lock()


def get_advisor_pool(max_workers: int = 2) -> ThreadPoolExecutor:
    global _advisor_pool
    with _advisor_pool_lock:
        if _advisor_pool is None:
            _advisor_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mapping-advisor")
        return _advisor_pool


def shutdown_advisor_pool() -> None:
    global _advisor_pool
    with _advisor_pool_lock:
        if _advisor_pool is not None:
            _advisor_pool.shutdown(wait=False, cancel_futures=True)
            _advisor_pool = None


def _log_late_result(handle: str, future: Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning(f"Mapping advisor for session {handle} failed after the wait expired: {error}")
    else:
        logger.info(f"Mapping advisor for session {handle} answered after the wait expired; result discarded")


def request_suggestion(
    store: ImportSessionStore,
    handle: str,
    advisor: Optional[MappingAdvisor],
    catalog: Mapping[str, str],
    wait_seconds: float,
    executor: Optional[ThreadPoolExecutor] = None,
) -> ImportSession:
    """
    Ask the advisor for a mapping and wait at most ``wait_seconds`` for it.

    The session already holds the all-``__new__`` default; an answer that
    arrives in time replaces it, anything else leaves the default in place
    with confidence ``none`` and an explanatory note.
    """
    session = store.get(handle)
    headers: List[str] = list(session.headers)

    if advisor is None:
        store.apply_suggestion(handle, default_mapping(headers), "none", "Mapping advisor is disabled")
        return store.get(handle)

    pool = executor or get_advisor_pool()
    future = pool.submit(advisor.suggest, headers, list(session.preview_rows), catalog)
    done, _ = wait([future], timeout=wait_seconds)

    if future not in done:
        future.add_done_callback(lambda f: _log_late_result(handle, f))
        logger.warning(f"Mapping advisor '{advisor.name}' timed out after {wait_seconds}s for session {handle}")
        store.apply_suggestion(
            handle, default_mapping(headers), "none", f"Mapping advisor timed out after {wait_seconds:g}s"
        )
        return store.get(handle)

    try:
        suggestion = future.result()
    except Exception as e:
        logger.warning(f"Mapping advisor '{advisor.name}' failed for session {handle}: {e}")
        store.apply_suggestion(handle, default_mapping(headers), "none", f"Mapping advisor unavailable: {e}")
        return store.get(handle)

    mapping = sanitize_suggestion(headers, suggestion.mapping, catalog)
    store.apply_suggestion(handle, mapping, normalize_confidence(suggestion.confidence), suggestion.notes)
    logger.info(
        f"Mapping advisor '{advisor.name}' suggested {sum(1 for t in mapping.values() if t in catalog)} "
        f"field mapping(s) for session {handle} ({suggestion.confidence})"
    )
    return store.get(handle)
