from abc import ABC, abstractmethod
from http import HTTPStatus

from pydantic import BaseModel


class FetchedResource(BaseModel):
    url: str
    status: int
    reason: str
    content_type: str
    text: str

    @property
    def ok(self) -> bool:
        return HTTPStatus.OK <= self.status < HTTPStatus.MULTIPLE_CHOICES


class BaseFetchClient(ABC):
    @abstractmethod
    async def fetch(self, url: str, timeout: float) -> FetchedResource: ...
