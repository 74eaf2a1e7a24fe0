from abc import ABC, abstractmethod


class BaseConvertClient(ABC):
    """Converts an HTML document or fragment into agent-readable text."""

    @abstractmethod
    async def convert(self, html: str) -> str: ...
