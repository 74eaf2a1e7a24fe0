from typing import override

from html_to_markdown import convert_to_markdown

from web_access_mcp.clients.convert.base import BaseConvertClient


class MarkdownConvertClient(BaseConvertClient):
    @override
    async def convert(self, html: str) -> str:
        return convert_to_markdown(source=html, preprocess_html=True, heading_style="atx").strip()
