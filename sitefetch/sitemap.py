"""
Sitemap parsing and crawling.

Handles both <urlset> documents and <sitemapindex> documents. Child
sitemaps of an index are fetched through the worker pool.
"""
import logging
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

from .cache import CacheTier
from .errors import FetchError, SitemapNotFound, SitemapParseError
from .pool import DEFAULT_CONCURRENCY, ProgressCallback, process_concurrently

logger = logging.getLogger("sitefetch.sitemap")

DEFAULT_PRIORITY = 0.5
DEFAULT_CHANGE_FREQ = "weekly"

# Where WordPress and most generators put sitemaps
SITEMAP_LOCATIONS = [
    "/wp-sitemap.xml",
    "/post-sitemap.xml",
    "/sitemap_index.xml",
    "/sitemap.xml",
]


@dataclass
class SitemapEntry:
    url: str
    last_modified: str = ""
    priority: float = DEFAULT_PRIORITY
    change_freq: str = DEFAULT_CHANGE_FREQ

    def to_dict(self) -> Dict[str, object]:
        return {
            "url": self.url,
            "lastModified": self.last_modified,
            "priority": self.priority,
            "changeFreq": self.change_freq,
        }


@dataclass
class SitemapDocument:
    """A parsed sitemap: page entries, child sitemaps, or both."""
    entries: List[SitemapEntry] = field(default_factory=list)
    child_sitemaps: List[str] = field(default_factory=list)
    total_count: int = 0

    @property
    def is_index(self) -> bool:
        return bool(self.child_sitemaps)


def _local_name(tag: str) -> str:
    """Strip any XML namespace: '{ns}url' -> 'url'."""
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    for child in element:
        if _local_name(child.tag) == name and child.text:
            return child.text.strip()
    return None


def _parse_priority(raw: Optional[str]) -> float:
    if not raw:
        return DEFAULT_PRIORITY
    try:
        return float(raw)
    except ValueError:
        return DEFAULT_PRIORITY


def parse_sitemap(
    xml_text: str,
    max_entries: Optional[int] = None,
    filter_patterns: Optional[Sequence[str]] = None,
) -> SitemapDocument:
    """
    Parse sitemap XML.

    Args:
        xml_text: Raw sitemap document
        max_entries: Stop after this many matching entries
        filter_patterns: Keep only entries whose URL contains one of these

    Raises:
        SitemapParseError: If the text isn't well-formed XML
    """
    try:
        root = ET.fromstring(xml_text.strip())
    except ET.ParseError as e:
        raise SitemapParseError(f"Invalid XML format: {e}") from e

    document = SitemapDocument()

    for element in root.iter():
        name = _local_name(element.tag)

        if name == "sitemap":
            loc = _child_text(element, "loc")
            if loc:
                document.child_sitemaps.append(loc)
            continue

        if name != "url":
            continue

        document.total_count += 1
        loc = _child_text(element, "loc")
        if not loc:
            continue
        if filter_patterns and not any(pattern in loc for pattern in filter_patterns):
            continue
        if max_entries is not None and len(document.entries) >= max_entries:
            continue

        document.entries.append(SitemapEntry(
            url=loc,
            last_modified=_child_text(element, "lastmod") or "",
            priority=_parse_priority(_child_text(element, "priority")),
            change_freq=_child_text(element, "changefreq") or DEFAULT_CHANGE_FREQ,
        ))

    return document


def discover_sitemap_urls(site_url: str) -> List[str]:
    """Conventional sitemap locations for a site root."""
    base = site_url if site_url.endswith("/") else site_url + "/"
    return [urljoin(base, path.lstrip("/")) for path in SITEMAP_LOCATIONS]


def is_sitemap_url(url: str) -> bool:
    """True for URLs naming an XML document rather than a site root."""
    path = urlparse(url).path.lower()
    return path.endswith(".xml")


class SitemapCrawler:
    """
    Fetches a sitemap and, for sitemap indexes, its child sitemaps.

    Fetching goes through a ContentClient so results are cached and retried.
    """

    def __init__(self, client, tier: CacheTier = CacheTier.DURABLE):
        self._client = client
        self._tier = tier

    def crawl(
        self,
        url: str,
        max_entries: Optional[int] = None,
        filter_patterns: Optional[Sequence[str]] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SitemapDocument:
        """
        Crawl url and return the merged, deduplicated entries.

        Child sitemaps that fail to fetch or parse are logged and skipped;
        a failure on the root sitemap propagates.
        """
        root = parse_sitemap(
            self._client.fetch_text(url, tier=self._tier).text,
            max_entries=max_entries,
            filter_patterns=filter_patterns,
        )
        if not root.is_index:
            return root

        merged = SitemapDocument(entries=list(root.entries), total_count=root.total_count)
        lock = threading.Lock()
        children = list(dict.fromkeys(root.child_sitemaps))

        def process(child_url: str, index: int) -> None:
            text = self._client.fetch_text(child_url, tier=self._tier).text
            child = parse_sitemap(text, filter_patterns=filter_patterns)
            with lock:
                merged.total_count += child.total_count
                merged.entries.extend(child.entries)
                merged.child_sitemaps.append(child_url)

        def should_stop() -> bool:
            return max_entries is not None and len(merged.entries) >= max_entries

        logger.info(f"Sitemap index {url} lists {len(children)} child sitemaps")
        process_concurrently(
            children,
            process,
            concurrency=concurrency,
            on_progress=on_progress,
            should_stop=should_stop,
        )

        merged.entries = _dedupe(merged.entries)
        if max_entries is not None:
            merged.entries = merged.entries[:max_entries]
        return merged

    def crawl_site(
        self,
        site_url: str,
        max_entries: Optional[int] = None,
        filter_patterns: Optional[Sequence[str]] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> Tuple[str, SitemapDocument]:
        """
        Crawl the first conventional sitemap location of site_url that works.

        Returns:
            The sitemap URL that was used and its document

        Raises:
            SitemapNotFound: If no location could be fetched and parsed
        """
        candidates = discover_sitemap_urls(site_url)
        for sitemap_url in candidates:
            try:
                document = self.crawl(
                    sitemap_url,
                    max_entries=max_entries,
                    filter_patterns=filter_patterns,
                    concurrency=concurrency,
                )
            except (FetchError, SitemapParseError) as e:
                logger.info(f"No usable sitemap at {sitemap_url}: {e.__class__.__name__}")
                continue
            logger.info(f"Using sitemap {sitemap_url} for {site_url}")
            return sitemap_url, document
        raise SitemapNotFound(site_url, candidates)


def _dedupe(entries: Iterable[SitemapEntry]) -> List[SitemapEntry]:
    seen = set()
    unique = []
    for entry in entries:
        if entry.url in seen:
            continue
        seen.add(entry.url)
        unique.append(entry)
    return unique
