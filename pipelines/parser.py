"""Document parsing: HTML/Markdown/plain text to normalized markdown text."""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup
from trafilatura import extract

logger = logging.getLogger(__name__)

STRIP_TAGS = ['script', 'style', 'nav', 'header', 'footer', 'noscript', 'iframe', 'svg', 'form']
BLOCK_TAGS = ['h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'p', 'li', 'pre', 'blockquote', 'td', 'th', 'dt', 'dd']
MAIN_SELECTORS = ['main', 'article', '[role="main"]', '.content', '.main-content', '#content',
                  '#main-content', '.documentation', '.docs-content', '.markdown-body']


@dataclass
class ParsedDocument:
    """Extracted text plus the bits the crawler needs."""
    title: str
    text: str
    section: Optional[str] = None
    links: List[str] = field(default_factory=list)
    content_kind: str = "html"


def clean_text(text: str) -> str:
    """Trim trailing spaces and collapse runs of blank lines."""
    lines = [line.rstrip() for line in text.replace('\r\n', '\n').split('\n')]
    text = '\n'.join(lines)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


class DocumentParser:
    """Convert fetched bodies into markdown-flavored text.

    Args:
        use_trafilatura: Use trafilatura for main-content extraction, falling
            back to BeautifulSoup when it yields too little text
        min_extracted_chars: Below this, trafilatura output is discarded
    """

    def __init__(self, use_trafilatura: bool = True, min_extracted_chars: int = 40):
        self.use_trafilatura = use_trafilatura
        self.min_extracted_chars = min_extracted_chars

    def parse(self, raw: str, url: str, content_type: str = "") -> ParsedDocument:
        content_type = (content_type or "").lower()
        path = urlparse(url).path.lower()
        if 'html' in content_type:
            return self.parse_html(raw, url)
        if 'markdown' in content_type or path.endswith(('.md', '.markdown')):
            return self.parse_markdown(raw)
        return self.parse_text(raw)

    def parse_html(self, html: str, url: str) -> ParsedDocument:
        soup = BeautifulSoup(html, 'html.parser')

        # Navigation menus hold most doc links, so collect before stripping
        links = []
        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if href:
                links.append(href)

        title = self._extract_title(soup)
        section = self._extract_section(soup)

        for tag in soup(STRIP_TAGS):
            tag.decompose()

        text = None
        if self.use_trafilatura:
            try:
                text = extract(html, output_format="markdown", include_links=False,
                               include_tables=True, include_formatting=True, url=url)
            except Exception as e:
                logger.warning(f"trafilatura failed on {url}: {e}")
                text = None

        if not text or len(text.strip()) < self.min_extracted_chars:
            root = self._main_content(soup)
            text = self._soup_to_markdown(root)

        return ParsedDocument(title=title, text=clean_text(text), section=section,
                              links=links, content_kind="html")

    def parse_markdown(self, markdown: str) -> ParsedDocument:
        lines = markdown.split('\n')
        title = 'Untitled'
        section = None
        seen_h1 = False
        for line in lines:
            stripped = line.strip()
            if stripped.startswith('# ') and not seen_h1:
                title = stripped[2:].strip()
                seen_h1 = True
            elif stripped.startswith('## ') and seen_h1 and section is None:
                section = stripped[3:].strip()
        return ParsedDocument(title=title, text=clean_text(markdown), section=section,
                              content_kind="markdown")

    def parse_text(self, text: str) -> ParsedDocument:
        first_line = next((line.strip() for line in text.split('\n') if line.strip()), '')
        return ParsedDocument(title=first_line[:200] or 'Untitled', text=clean_text(text),
                              content_kind="text")

    def _extract_title(self, soup: BeautifulSoup) -> str:
        og_title = soup.find('meta', attrs={'property': 'og:title'})
        if og_title and og_title.get('content'):
            return og_title['content'].strip()
        h1 = soup.find('h1')
        if h1 and h1.get_text(strip=True):
            return h1.get_text(" ", strip=True)
        if soup.title and soup.title.get_text(strip=True):
            return soup.title.get_text(strip=True)
        return 'Untitled'

    def _extract_section(self, soup: BeautifulSoup) -> Optional[str]:
        crumbs = soup.select('.breadcrumb, .breadcrumbs, [class*="breadcrumb"]')
        if crumbs:
            parts = [p.strip() for p in re.split(r'[>/]', crumbs[-1].get_text(" ", strip=True))]
            parts = [p for p in parts if p]
            if parts:
                return ' > '.join(parts)
        h2 = soup.find('h2')
        if h2 and h2.get_text(strip=True):
            return h2.get_text(" ", strip=True)
        return None

    def _main_content(self, soup: BeautifulSoup):
        for selector in MAIN_SELECTORS:
            element = soup.select_one(selector)
            if element is not None:
                return element
        return soup.body or soup

    def _soup_to_markdown(self, root) -> str:
        """Render outermost block elements as markdown lines."""
        blocks = []
        for element in root.find_all(BLOCK_TAGS):
            if element.find_parent(BLOCK_TAGS) is not None:
                continue
            name = element.name
            if name == 'pre':
                code = element.get_text().strip('\n')
                blocks.append(f"```\n{code}\n```")
                continue
            text = element.get_text(" ", strip=True)
            if not text:
                continue
            if name[0] == 'h' and name[1:].isdigit():
                blocks.append(f"{'#' * int(name[1:])} {text}")
            elif name == 'li':
                blocks.append(f"- {text}")
            elif name == 'blockquote':
                blocks.append(f"> {text}")
            else:
                blocks.append(text)

        if not blocks:
            return root.get_text("\n", strip=True)
        return "\n\n".join(blocks)


_URL_SEGMENT_VERSION = re.compile(r'^v(?:ersion)?[-_]?([0-9]+(?:\.[0-9]+){0,2})$', re.IGNORECASE)
_URL_SEGMENT_NUMERIC = re.compile(r'^([0-9]+(?:\.[0-9]+){1,2})$')
_TEXT_VERSION_PATTERNS = [
    re.compile(r'version\s*(?:release\s*)?[:\-]?\s*v?(\d+(?:\.\d+){0,2})', re.IGNORECASE),
    re.compile(r'release\s*v?(\d+(?:\.\d+){0,2})', re.IGNORECASE),
    re.compile(r'\bv(\d+(?:\.\d+){0,2})\b'),
    re.compile(r'\b(\d+\.\d+\.\d+)\b'),
]


def _is_likely_year(value: str) -> bool:
    try:
        return 2000 <= float(value) <= 2099
    except ValueError:
        return False


def detect_version(url: str, title: str = "", section: Optional[str] = None, text: str = "") -> str:
    """Best-effort documentation version for a page; ``latest`` when unknown."""
    parsed = urlparse(url)
    for segment in [s for s in parsed.path.split('/') if s]:
        match = _URL_SEGMENT_VERSION.match(segment) or _URL_SEGMENT_NUMERIC.match(segment)
        if match:
            return match.group(1)

    query_version = parse_qs(parsed.query).get('version')
    if query_version and re.fullmatch(r'[0-9]+(?:\.[0-9]+){0,2}', query_version[0]):
        return query_version[0]

    combined = f"{title}\n{section or ''}\n{text[:2000]}"
    for pattern in _TEXT_VERSION_PATTERNS:
        match = pattern.search(combined)
        if match and not _is_likely_year(match.group(1)):
            return match.group(1)

    return 'latest'
