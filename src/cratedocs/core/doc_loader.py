"""Documentation loaders.

``DocumentLoader`` is the interface the pipeline depends on. ``DocsRsLoader``
crawls a crate's rendered rustdoc on docs.rs and returns one plain-text
document per page.
"""

import logging
import re
from collections import deque
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import CrateNotFoundError, FetchError, ParseError
from .models import Document, LoadResult

logger = logging.getLogger(__name__)

DOCS_RS_BASE = "https://docs.rs"
USER_AGENT = "cratedocs-populate/0.1"

# Elements that carry navigation or chrome rather than documentation text.
NOISE_SELECTORS = ["script", "style", "nav", "noscript", "rustdoc-toolbar", ".out-of-band", ".src"]


class DocumentLoader:
    """Interface for anything that can produce a crate's documentation pages."""

    def load(
        self,
        crate_name: str,
        version_selector: str = "*",
        features: Optional[Sequence[str]] = None,
        max_pages: Optional[int] = None,
    ) -> LoadResult:
        raise NotImplementedError


class _TransientFetchError(FetchError):
    pass


def _normalise(text: str) -> str:
    """Collapse runs of spaces and blank lines."""
    text = re.sub(r"[^\S\n]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


def extract_main_content(html: str) -> Optional[str]:
    """Return the rustdoc main content of a page as plain text, if present."""
    soup = BeautifulSoup(html, "html.parser")
    main = soup.select_one("#main-content") or soup.find("main")
    if main is None:
        return None
    for selector in NOISE_SELECTORS:
        for element in main.select(selector):
            element.decompose()
    text = _normalise(main.get_text("\n"))
    return text or None


class DocsRsLoader(DocumentLoader):
    """Crawl a crate's documentation on docs.rs."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        base_url: str = DOCS_RS_BASE,
        timeout: float = 30.0,
    ):
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @retry(
        retry=retry_if_exception_type(_TransientFetchError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _get(self, url: str) -> requests.Response:
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise _TransientFetchError(f"Failed to fetch {url}: {e}") from e
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch {url}: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise _TransientFetchError(f"Failed to fetch {url}: HTTP {response.status_code}")
        return response

    def _path_segments(self, url: str) -> List[str]:
        """Path segments of a docs.rs URL below ``base_url``: crate, version, module, ..."""
        base_path = urlparse(self.base_url).path.rstrip("/")
        path = urlparse(url).path
        if base_path and path.startswith(base_path):
            path = path[len(base_path):]
        return [part for part in path.strip("/").split("/") if part]

    def _doc_roots(self, final_url: str, crate_name: str, version_segment: str, module_name: str) -> Tuple[str, str]:
        """Version root and module prefix of the rustdoc tree that was actually served.

        Taken from the final URL when it has crate, version and module
        segments: docs.rs redirects to the canonical crate name and to the
        library name, which can differ from the crate (/md-5/0.10.6/md5/).
        """
        parts = self._path_segments(final_url)
        if len(parts) >= 3 and not parts[2].endswith(".html"):
            parsed = urlparse(final_url)
            base_path = urlparse(self.base_url).path.rstrip("/")
            version_root = f"{parsed.scheme}://{parsed.netloc}{base_path}/{parts[0]}/{parts[1]}/"
            return version_root, f"{version_root}{parts[2]}/"
        version_root = f"{self.base_url}/{crate_name}/{version_segment}/"
        return version_root, f"{version_root}{module_name}/"

    @staticmethod
    def _version_from_html(html: str) -> Optional[str]:
        soup = BeautifulSoup(html, "html.parser")
        element = soup.select_one(".sidebar-crate .version") or soup.select_one(".version")
        if element is None:
            return None
        return element.get_text(strip=True) or None

    def _detect_version(self, final_url: str, html: str) -> Optional[str]:
        # Either the URL carries the concrete version, or the rustdoc sidebar does.
        parts = self._path_segments(final_url)
        segment = parts[1] if len(parts) >= 2 else None
        if segment and segment not in ("latest", "*"):
            return segment
        return self._version_from_html(html)

    def load(
        self,
        crate_name: str,
        version_selector: str = "*",
        features: Optional[Sequence[str]] = None,
        max_pages: Optional[int] = None,
    ) -> LoadResult:
        """
        Crawl the rustdoc pages of a crate.

        Args:
            crate_name: Crate to load, e.g. "serde"
            version_selector: Exact version, or "*" for the latest release
            features: Feature flags requested by the caller
            max_pages: Hard ceiling on the number of pages returned

        Returns:
            LoadResult with one document per page and the resolved version
        """
        if features:
            logger.warning(
                f"docs.rs builds {crate_name} with its own feature set; ignoring requested features {list(features)}"
            )
        if max_pages is not None and max_pages < 1:
            return LoadResult(documents=[], version=None)

        version_segment = "latest" if version_selector in ("*", "", None) else version_selector
        module_name = crate_name.replace("-", "_")
        start_url = f"{self.base_url}/{crate_name}/{version_segment}/{module_name}/"

        response = self._get(start_url)
        if response.status_code == 404:
            raise CrateNotFoundError(f"No documentation found on docs.rs at {start_url}", crate_name=crate_name)
        if response.status_code >= 400:
            raise FetchError(f"Failed to fetch {start_url}: HTTP {response.status_code}", crate_name=crate_name)

        final_url = response.url or start_url
        version = self._detect_version(final_url, response.text)
        version_root, module_prefix = self._doc_roots(final_url, crate_name, version_segment, module_name)

        first_content = extract_main_content(response.text)
        if first_content is None:
            raise ParseError(f"No documentation content found at {final_url}", crate_name=crate_name)

        documents: List[Document] = []
        seen = {self._canonical(final_url)}
        queue = deque()

        def visit(url: str, html: str, content: Optional[str]) -> None:
            if content:
                documents.append(Document(path=url[len(version_root):] or "index.html", content=content))
            for link in self._links(url, html, module_prefix):
                if link not in seen:
                    seen.add(link)
                    queue.append(link)

        visit(self._canonical(final_url), response.text, first_content)

        while queue and (max_pages is None or len(documents) < max_pages):
            url = queue.popleft()
            try:
                page = self._get(url)
            except FetchError as e:
                logger.warning(f"Skipping {url}: {e.message}")
                continue
            if page.status_code >= 400:
                logger.warning(f"Skipping {url}: HTTP {page.status_code}")
                continue
            visit(url, page.text, extract_main_content(page.text))

        if max_pages is not None:
            documents = documents[:max_pages]

        logger.info(f"Loaded {len(documents)} pages for {crate_name} (version={version})")
        return LoadResult(documents=documents, version=version)

    @staticmethod
    def _canonical(url: str) -> str:
        url, _ = urldefrag(url)
        url = url.split("?", 1)[0]
        if url.endswith("/"):
            url += "index.html"
        return url

    def _links(self, page_url: str, html: str, module_prefix: str) -> List[str]:
        soup = BeautifulSoup(html, "html.parser")
        links = []
        for anchor in soup.find_all("a", href=True):
            url = self._canonical(urljoin(page_url, anchor["href"]))
            if not url.startswith(module_prefix) or not url.endswith(".html"):
                continue
            relative = url[len(module_prefix):]
            if relative.startswith("src/") or "/src/" in relative or relative.endswith("all.html"):
                continue
            links.append(url)
        return links
