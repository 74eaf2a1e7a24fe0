"""Recover page text from the data a Next.js app ships for client-side hydration.

Pages rendered with the App Router push React Server Component payloads through
`self.__next_f.push([1, "..."])` scripts. Pages rendered with the Pages Router embed their
props in a `__NEXT_DATA__` JSON script. Either is often the only place the text of a
client-rendered page appears.
"""

import json
import re
from collections.abc import Iterator
from typing import Any

import lxml.html
from lxml.etree import ParserError

FLIGHT_PUSH = re.compile(r"self\.__next_f\.push\(\[1,\s*(\"(?:[^\"\\]|\\.)*\")\]\)", re.DOTALL)
FLIGHT_ROW = re.compile(r"^[0-9a-f]+:(?=[\[{\"])")
NEXT_DATA_ID = "__NEXT_DATA__"

TEXT_KEYS = {"children", "content", "body", "text", "description", "title", "markdown"}
MIN_TEXT_LENGTH = 2


def _scripts(html: str) -> list[tuple[str | None, str]]:
    try:
        document = lxml.html.document_fromstring(html)
    except (ParserError, ValueError):
        return []

    return [(script.get("id"), script.text or "") for script in document.iter("script")]


def _strings(value: Any, keys: set[str]) -> Iterator[str]:
    """Walk decoded JSON and yield the string values stored under `keys`, in document order."""

    if isinstance(value, dict):
        for key, item in value.items():
            if key not in keys:
                yield from _strings(item, keys)
            elif isinstance(item, str):
                yield item
            elif isinstance(item, list) and not _is_element(item):
                for child in item:
                    if isinstance(child, str):
                        yield child
                    else:
                        yield from _strings(child, keys)
            else:
                yield from _strings(item, keys)
    elif isinstance(value, list):
        for item in value:
            yield from _strings(item, keys)


def _is_element(value: list[Any]) -> bool:
    # RSC elements are encoded as ["$", tag, key, props].
    return bool(value) and value[0] == "$"


def _usable(text: str) -> bool:
    stripped = text.strip()
    return len(stripped) >= MIN_TEXT_LENGTH and not stripped.startswith("$")


def flight_chunks(html: str) -> list[str]:
    """The decoded string payloads of every `self.__next_f.push` call on the page."""

    chunks: list[str] = []

    for _, source in _scripts(html):
        for match in FLIGHT_PUSH.finditer(source):
            try:
                chunk = json.loads(match.group(1))
            except json.JSONDecodeError:
                continue

            if isinstance(chunk, str):
                chunks.append(chunk)

    return chunks


def flight_text(html: str) -> list[str]:
    texts: list[str] = []

    for row in "".join(flight_chunks(html)).splitlines():
        if not (prefix := FLIGHT_ROW.match(row)):
            continue

        try:
            payload = json.loads(row[prefix.end() :])
        except json.JSONDecodeError:
            continue

        texts.extend(text.strip() for text in _strings(payload, {"children"}) if _usable(text))

    return texts


def next_data_text(html: str) -> list[str]:
    for script_id, source in _scripts(html):
        if script_id != NEXT_DATA_ID:
            continue

        try:
            data = json.loads(source)
        except json.JSONDecodeError:
            return []

        page_props = data.get("props", {}).get("pageProps", {}) if isinstance(data, dict) else {}

        return [text.strip() for text in _strings(page_props, TEXT_KEYS) if _usable(text)]

    return []


def extract_flight_text(html: str) -> str | None:
    """Join the text recovered from hydration data, or None if the page carries none."""

    texts = flight_text(html) or next_data_text(html)

    deduplicated: list[str] = []
    for text in texts:
        if not deduplicated or deduplicated[-1] != text:
            deduplicated.append(text)

    return "\n\n".join(deduplicated) or None
