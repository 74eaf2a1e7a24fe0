from enum import StrEnum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_NUM_RESULTS = 5
MAX_NUM_RESULTS = 20


class RecencyFilter(StrEnum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class SearchQuery(BaseModel):
    """A search request. Immutable once issued."""

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True, use_attribute_docstrings=True)

    text: str = Field(min_length=1)
    """The query text."""

    recency: RecencyFilter | None = None
    """Only consider sources published within this window."""

    domain_filter: tuple[str, ...] = ()
    """Domains to restrict results to. Entries prefixed with `-` are excluded instead."""

    num_results: int = Field(default=DEFAULT_NUM_RESULTS, ge=1, le=MAX_NUM_RESULTS)
    """The maximum number of sources to return."""


class SearchResult(BaseModel):
    title: str
    url: str
    snippet: str


class SearchResponse(BaseModel):
    answer: str = ""
    results: list[SearchResult] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.answer and not self.results
