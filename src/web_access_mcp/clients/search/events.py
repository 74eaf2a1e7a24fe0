"""Rebuild an answer and its sources from a Perplexity server-sent event stream.

The stream carries blocks of two kinds we care about: a sources block listing web results, and
diff blocks patching the markdown answer. Patches may resend the whole answer so far or only the
newest tokens, so they are merged with a monotonic-growth rule instead of being concatenated.
"""

import json
import re
from collections.abc import Iterable
from typing import Any

from web_access_mcp.models.search import SearchResponse, SearchResult

DONE_SENTINEL = "[DONE]"
LINE_BREAK = re.compile(r"\r?\n")
SOURCES_USAGE = "sources_answer_mode"
MARKDOWN_FIELD = "markdown_block"
PROGRESS_PATH = "/progress"


def parse_sse_events(raw: str) -> list[dict[str, Any]]:
    """Split a raw event stream into JSON payloads. Malformed payloads are skipped."""

    events: list[dict[str, Any]] = []
    data_lines: list[str] = []

    def flush() -> None:
        if not data_lines:
            return

        payload = "\n".join(data_lines)
        data_lines.clear()

        if not payload or payload == DONE_SENTINEL:
            return

        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            return

        if isinstance(parsed, dict):
            events.append(parsed)

    for line in LINE_BREAK.split(raw):
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif not line.strip():
            flush()

    flush()

    return events


def coerce_patch_text(value: Any) -> str:
    if isinstance(value, str):
        return value

    if not isinstance(value, dict):
        return ""

    if isinstance(answer := value.get("answer"), str):
        return answer

    if isinstance(text := value.get("text"), str):
        return text

    if isinstance(chunks := value.get("chunks"), list):
        return "".join(chunk for chunk in chunks if isinstance(chunk, str))

    return ""


def apply_patch(answer: str, fragment: str) -> str:
    """Merge one answer fragment into the answer accumulated so far.

    A fragment that extends the answer replaces it. A fragment that is already a prefix or the
    tail of the answer is a resend and is ignored. Anything else is new text and is appended.
    """

    if fragment.startswith(answer):
        return fragment

    if answer.startswith(fragment) or answer.endswith(fragment):
        return answer

    return answer + fragment


def _source_result(source: dict[str, Any], position: int) -> SearchResult | None:
    url = source.get("url")
    if not isinstance(url, str) or not url:
        return None

    title = source.get("name") if isinstance(source.get("name"), str) else source.get("title")
    snippet = source.get("snippet") if isinstance(source.get("snippet"), str) else source.get("preview_text")

    return SearchResult(
        title=title if isinstance(title, str) else f"Source {position}",
        url=url,
        snippet=snippet if isinstance(snippet, str) else "",
    )


def extract_answer(events: Iterable[dict[str, Any]], max_results: int) -> SearchResponse:
    results: list[SearchResult] = []
    seen: set[str] = set()
    answer = ""

    for event in events:
        blocks = event.get("blocks")
        if not isinstance(blocks, list):
            continue

        for block in blocks:
            if not isinstance(block, dict):
                continue

            if block.get("intended_usage") == SOURCES_USAGE:
                sources_block = block.get("sources_mode_block")
                web_results = sources_block.get("web_results") if isinstance(sources_block, dict) else None

                for source in web_results if isinstance(web_results, list) else []:
                    if len(results) >= max_results:
                        break

                    if not isinstance(source, dict):
                        continue

                    result = _source_result(source, position=len(results) + 1)
                    if result is None or result.url in seen:
                        continue

                    seen.add(result.url)
                    results.append(result)

            diff_block = block.get("diff_block")
            if not isinstance(diff_block, dict) or diff_block.get("field") != MARKDOWN_FIELD:
                continue

            patches = diff_block.get("patches")
            for patch in patches if isinstance(patches, list) else []:
                if not isinstance(patch, dict) or patch.get("path") == PROGRESS_PATH:
                    continue

                if fragment := coerce_patch_text(patch.get("value")):
                    answer = apply_patch(answer, fragment)

    return SearchResponse(answer=answer.strip(), results=results[:max_results])


def reconstruct(raw: str, max_results: int) -> SearchResponse:
    """Parse a raw event stream and rebuild the final answer and its deduplicated sources."""
    return extract_answer(parse_sse_events(raw), max_results=max_results)
