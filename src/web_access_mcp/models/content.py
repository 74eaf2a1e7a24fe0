from typing import Self

from pydantic import BaseModel, model_validator

TRUNCATION_MARKER = "\n\n[Content truncated...]"


class ExtractedContent(BaseModel):
    """The outcome of extracting one URL. Exactly one of `content` and `error` is populated."""

    url: str
    title: str = ""
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _content_or_error(self) -> Self:
        if self.error is not None and self.content:
            msg = "Extracted content cannot carry both content and an error"
            raise ValueError(msg)

        if self.error is None and not self.content:
            msg = "Extracted content without an error must carry content"
            raise ValueError(msg)

        return self

    @classmethod
    def failure(cls, url: str, error: str) -> "ExtractedContent":
        return cls(url=url, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None


def truncate_content(content: str, max_length: int) -> str:
    """Truncate content to `max_length` characters, appending a marker when anything was cut."""
    if len(content) <= max_length:
        return content

    return content[:max_length] + TRUNCATION_MARKER
