from abc import ABC, abstractmethod
from http import HTTPStatus

from pydantic import BaseModel

from web_access_mcp.errors import FailureClass
from web_access_mcp.models.search import SearchQuery, SearchResponse

AUTH_REJECTED_STATUSES = {HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN, HTTPStatus.TOO_MANY_REQUESTS}


class ProviderResult(BaseModel):
    """A successful provider response together with the HTTP status it arrived with."""

    status: int
    response: SearchResponse


class BaseSearchClient(ABC):
    @abstractmethod
    async def search(self, query: SearchQuery) -> SearchResponse: ...


def classify_status(status: int) -> FailureClass:
    """Classify a non-success HTTP status from a search provider."""

    if status in AUTH_REJECTED_STATUSES:
        return FailureClass.AUTH_REJECTED

    if status >= HTTPStatus.INTERNAL_SERVER_ERROR:
        return FailureClass.TRANSPORT

    return FailureClass.MALFORMED_RESPONSE
