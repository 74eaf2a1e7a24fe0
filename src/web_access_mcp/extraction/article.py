import lxml.html
from lxml.etree import ParserError
from pydantic import BaseModel
from readability import Document
from readability.readability import Unparseable

from web_access_mcp.utils.logging import BASE_LOGGER

logger = BASE_LOGGER.getChild("article")

MIN_ARTICLE_TEXT_LENGTH = 100


class Article(BaseModel):
    title: str
    html: str


def page_title(html: str) -> str:
    try:
        document = lxml.html.document_fromstring(html)
    except (ParserError, ValueError):
        return ""

    return (document.findtext(".//title") or "").strip()


def text_length(html: str) -> int:
    try:
        return len(lxml.html.fragment_fromstring(html, create_parent="div").text_content().strip())
    except (ParserError, ValueError):
        return 0


def extract_article(html: str) -> Article | None:
    """Find the main article of a page. Returns None when nothing with enough readable text is found."""

    try:
        document = Document(html)
        summary = document.summary(html_partial=True)
        title = document.short_title()
    except (Unparseable, ParserError, ValueError) as e:
        logger.debug(f"Readability could not parse the page: {e}")
        return None

    if text_length(summary) < MIN_ARTICLE_TEXT_LENGTH:
        return None

    return Article(title=title or page_title(html), html=summary)
