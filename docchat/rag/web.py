"""Web page loading for the knowledge base.

Given a home page, follows the links in its list items and turns each
linked page into a plain-text document.
"""
from collections import Counter
from typing import Dict, List, Optional
from urllib.parse import urljoin, urldefrag
import httpx
import structlog
from bs4 import BeautifulSoup
from langchain_core.documents import Document

from docchat import config

logger = structlog.get_logger()

STRIPPED_TAGS = ["script", "style", "noscript", "template", "svg"]


class WebLoadError(RuntimeError):
    """Raised when a page cannot be fetched or parsed."""


class WebLoader:
    """Fetches pages with httpx and extracts text with BeautifulSoup."""

    def __init__(
        self,
        max_links: int = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the loader.

        Args:
            max_links: Maximum number of linked pages to follow
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used to stub the network in tests)
        """
        self.max_links = max_links or config.SCRAPE_MAX_LINKS
        self.timeout = timeout or config.SCRAPE_TIMEOUT
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.timeout,
            headers={"User-Agent": config.SCRAPE_USER_AGENT},
            transport=self.transport,
        )

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> str:
        response = await client.get(url)
        response.raise_for_status()
        return response.text

    async def extract_links(self, url: str, client: Optional[httpx.AsyncClient] = None) -> List[Dict[str, str]]:
        """Collect the links found in <li><a> elements of a page.

        Fragment-only links are skipped, relative links are resolved against
        the page URL and duplicates are dropped.

        Returns:
            Up to max_links dicts with 'text' and 'href'

        Raises:
            WebLoadError: If the page cannot be fetched
        """
        try:
            if client is None:
                async with self._client() as own_client:
                    html = await self._fetch(own_client, url)
            else:
                html = await self._fetch(client, url)
        except httpx.HTTPError as e:
            logger.error("link_extraction_failed", url=url, error=str(e))
            raise WebLoadError(f"Failed to extract links from {url}: {e}") from e

        soup = BeautifulSoup(html, "html.parser")
        links = []
        seen = set()

        for anchor in soup.select("li a"):
            href = (anchor.get("href") or "").strip()
            if not href or href.startswith("#"):
                continue

            absolute, _ = urldefrag(urljoin(url, href))
            if not absolute.startswith(("http://", "https://")) or absolute in seen:
                continue

            seen.add(absolute)
            links.append({"text": anchor.get_text(strip=True), "href": absolute})

            if len(links) >= self.max_links:
                break

        logger.info("links_extracted", url=url, count=len(links))
        return links

    async def load_page(self, url: str, client: Optional[httpx.AsyncClient] = None) -> List[Document]:
        """Fetch a page and return its visible text as one document.

        Returns:
            A single-element list, or an empty list when the page has no text

        Raises:
            WebLoadError: If the page cannot be fetched
        """
        try:
            if client is None:
                async with self._client() as own_client:
                    html = await self._fetch(own_client, url)
            else:
                html = await self._fetch(client, url)
        except httpx.HTTPError as e:
            logger.error("page_fetch_failed", url=url, error=str(e))
            raise WebLoadError(f"Failed to load {url}: {e}") from e

        soup = BeautifulSoup(html, "html.parser")

        tag_counts = Counter(tag.name for tag in soup.find_all(True))
        logger.debug("page_tag_counts", url=url, tags=dict(tag_counts.most_common(10)))

        for tag in soup(STRIPPED_TAGS):
            tag.decompose()

        title = soup.title.get_text(strip=True) if soup.title else ""
        lines = (line.strip() for line in soup.get_text("\n").splitlines())
        text = "\n".join(line for line in lines if line)

        if not text:
            logger.warning("no_content_found_on_page", url=url)
            return []

        return [
            Document(
                page_content=text,
                metadata={"source": url, "title": title, "type": "web"},
            )
        ]

    async def crawl(self, url: str) -> List[Document]:
        """Load every page linked from url (or url itself if it links nowhere).

        A page that fails to load is logged and skipped.

        Raises:
            WebLoadError: If the starting page cannot be fetched
        """
        logger.info("crawl_started", url=url)

        async with self._client() as client:
            links = await self.extract_links(url, client=client)
            targets = [link["href"] for link in links] or [url]

            documents: List[Document] = []
            for href in targets:
                try:
                    documents.extend(await self.load_page(href, client=client))
                except WebLoadError as e:
                    logger.warning("page_skipped", url=href, error=str(e))

        logger.info("crawl_completed", url=url, pages_loaded=len(documents))
        return documents
