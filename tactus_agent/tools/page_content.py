"""Page content extraction backing the extract_page_content tool."""

import logging
import re
from abc import ABC, abstractmethod
from typing import Iterator, List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from pydantic import BaseModel

from tactus_agent.core.errors import ToolExecutionError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_LIMIT = 30000
TRUNCATION_MARKER = "\n\n[Content truncated...]"
EXCERPT_LENGTH = 200

NOISE_TAGS = ["script", "style", "noscript", "svg", "iframe", "template"]
CHROME_TAGS = ["nav", "header", "footer", "aside", "form"]
HEADING_TAGS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 5, "h6": 6}
CONTAINER_TAGS = {
    "html", "body", "main", "article", "section", "div", "figure",
    "figcaption", "details", "summary", "center", "dl", "table", "tbody",
    "thead", "tfoot", "tr",
}


class ExtractedContent(BaseModel):
    title: str = ""
    content: str = ""
    text_content: str = ""
    excerpt: str = ""
    byline: Optional[str] = None
    site_name: Optional[str] = None
    url: str = ""


def truncate_content(content: str, limit: int = DEFAULT_CONTENT_LIMIT) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + TRUNCATION_MARKER


def _clean_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _meta(soup: BeautifulSoup, *names: str) -> Optional[str]:
    for name in names:
        tag = soup.find("meta", attrs={"property": name}) or soup.find(
            "meta", attrs={"name": name}
        )
        if tag and tag.get("content"):
            return tag["content"].strip()
    return None


class PageExtractor:
    """Turns an HTML document into Markdown-ish readable text."""

    def extract(
        self, document: str, url: str = "", use_raw_extract: bool = False
    ) -> ExtractedContent:
        soup = BeautifulSoup(document or "", "html.parser")
        title = self._title(soup)

        if use_raw_extract:
            return self._raw(soup, title, url)

        for element in soup.find_all(NOISE_TAGS + CHROME_TAGS):
            element.decompose()
        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()

        root = (
            soup.find("article")
            or soup.find("main")
            or soup.find(attrs={"role": "main"})
            or soup.body
        )
        if root is None:
            return self._raw(soup, title, url)

        markdown = "\n\n".join(block for block in self._blocks(root) if block)
        text = _clean_text(root.get_text(" "))
        if not markdown.strip():
            logger.debug(f"No readable content found for {url}, using raw extraction")
            return self._raw(soup, title, url)

        return ExtractedContent(
            title=title,
            content=markdown,
            text_content=text,
            excerpt=_meta(soup, "og:description", "description") or text[:EXCERPT_LENGTH],
            byline=_meta(soup, "author", "article:author"),
            site_name=_meta(soup, "og:site_name"),
            url=url,
        )

    def _title(self, soup: BeautifulSoup) -> str:
        if soup.title and soup.title.string:
            return soup.title.string.strip()
        return _meta(soup, "og:title") or ""

    def _raw(self, soup: BeautifulSoup, title: str, url: str) -> ExtractedContent:
        body = soup.body or soup
        for element in body.find_all(NOISE_TAGS):
            element.decompose()
        text = body.get_text("\n", strip=True)
        return ExtractedContent(
            title=title,
            content=text,
            text_content=text,
            excerpt=text[:EXCERPT_LENGTH],
            url=url,
        )

    def _blocks(self, node: Tag) -> Iterator[str]:
        for child in node.children:
            if isinstance(child, Comment):
                continue
            if isinstance(child, NavigableString):
                text = _clean_text(str(child))
                if text:
                    yield text
                continue
            if not isinstance(child, Tag):
                continue

            name = child.name
            if name in HEADING_TAGS:
                text = _clean_text(child.get_text(" "))
                if text:
                    yield f"{'#' * HEADING_TAGS[name]} {text}"
            elif name == "pre":
                yield f"```\n{child.get_text().strip(chr(10))}\n```"
            elif name in ("ul", "ol"):
                yield "\n".join(self._list_items(child, ordered=name == "ol"))
            elif name == "blockquote":
                text = _clean_text(child.get_text(" "))
                if text:
                    yield f"> {text}"
            elif name == "br":
                continue
            elif name in CONTAINER_TAGS:
                yield from self._blocks(child)
            else:
                text = _clean_text(child.get_text(" "))
                if text:
                    yield text

    def _list_items(self, node: Tag, ordered: bool) -> List[str]:
        items = []
        for index, item in enumerate(node.find_all("li", recursive=False), 1):
            marker = f"{index}." if ordered else "-"
            text = _clean_text(item.get_text(" "))
            if text:
                items.append(f"{marker} {text}")
        return items


def format_extracted_content(content: ExtractedContent) -> str:
    """Render extracted content with its metadata header."""
    lines = [f"# {content.title or 'Untitled'}", ""]
    if content.url:
        lines.append(f"- Source: {content.url}")
    if content.byline:
        lines.append(f"- Author: {content.byline}")
    if content.site_name:
        lines.append(f"- Site: {content.site_name}")
    lines.extend(["", "---", "", content.content])
    return "\n".join(lines)


class PageSource(ABC):
    """Supplies the document the page tool reads."""

    @abstractmethod
    async def get_page(self) -> Tuple[str, str]:
        """Return ``(html, url)``."""


class StaticPageSource(PageSource):
    def __init__(self, html: str, url: str = ""):
        self.html = html
        self.url = url

    async def get_page(self) -> Tuple[str, str]:
        return self.html, self.url


class HttpPageSource(PageSource):
    """Fetches the page over HTTP; used when the CLI is pointed at a URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = http_client

    async def get_page(self) -> Tuple[str, str]:
        headers = {"User-Agent": "Mozilla/5.0 (compatible; TactusAgent/1.0)"}
        try:
            if self._client is not None:
                response = await self._client.get(self.url, headers=headers)
            else:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout), follow_redirects=True
                ) as client:
                    response = await client.get(self.url, headers=headers)
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Failed to fetch {self.url}: {e}") from e

        if response.status_code >= 400:
            raise ToolExecutionError(
                f"Failed to fetch {self.url}: HTTP {response.status_code}"
            )
        return response.text, str(response.url)
