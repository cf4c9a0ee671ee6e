"""Tests for the docs.rs crawler, driven by an in-memory HTTP session."""

from typing import Dict, List, Optional

import pytest
import requests

from cratedocs.core.doc_loader import DocsRsLoader, extract_main_content
from cratedocs.core.errors import CrateNotFoundError, FetchError, ParseError

ROOT = "https://docs.rs/demo/1.2.3/demo/"


def _page(body: str, links: str = "", sidebar: str = "") -> str:
    return (
        "<html><body>"
        f"<nav class='sidebar'><div class='sidebar-crate'>{sidebar}</div>nav text</nav>"
        f"<main><section id='main-content'>{body}</section></main>"
        f"{links}"
        "</body></html>"
    )


class FakeResponse:
    def __init__(self, status_code: int, url: str, text: str = ""):
        self.status_code = status_code
        self.url = url
        self.text = text


class FakeSession:
    """Serves canned pages keyed by URL; directory URLs resolve to index.html."""

    def __init__(self, pages: Dict[str, str], redirects: Optional[Dict[str, str]] = None, status: Optional[Dict[str, int]] = None):
        self.pages = pages
        self.redirects = redirects or {}
        self.status = status or {}
        self.headers: Dict[str, str] = {}
        self.requested: List[str] = []

    def get(self, url, timeout=None, allow_redirects=True):
        self.requested.append(url)
        final = self.redirects.get(url, url)
        if final in self.status:
            return FakeResponse(self.status[final], final)
        key = final + "index.html" if final.endswith("/") else final
        if key not in self.pages:
            return FakeResponse(404, final)
        return FakeResponse(200, final, self.pages[key])


def _site() -> FakeSession:
    index_links = (
        "<a href='struct.Runtime.html'>Runtime</a>"
        "<a href='fn.spawn.html#examples'>spawn</a>"
        "<a href='task/index.html'>task</a>"
        "<a href='all.html'>All items</a>"
        "<a href='../src/demo/lib.rs.html'>source</a>"
        "<a href='https://docs.rs/other/1.0.0/other/index.html'>other crate</a>"
        "<a href='https://doc.rust-lang.org/std/index.html'>std</a>"
    )
    pages = {
        ROOT + "index.html": _page("<h1>Crate demo</h1><p>Async runtime.</p><script>track()</script>", index_links),
        ROOT + "struct.Runtime.html": _page("<h1>Struct Runtime</h1><p>The runtime.</p>",
                                             "<a href='index.html'>back</a>"),
        ROOT + "fn.spawn.html": _page("<h1>Function spawn</h1><p>Spawns a task.</p>"),
        ROOT + "task/index.html": _page("<h1>Module task</h1><p>Tasks.</p>",
                                         "<a href='../struct.Runtime.html'>Runtime</a>"),
        ROOT + "all.html": _page("<h1>All items</h1>"),
    }
    redirects = {"https://docs.rs/demo/latest/demo/": ROOT}
    return FakeSession(pages, redirects)


class TestExtractMainContent:

    def test_strips_scripts_and_navigation(self):
        text = extract_main_content(_page("<h1>Title</h1><script>evil()</script><p>Body   text</p>"))

        assert "Title" in text
        assert "Body text" in text
        assert "evil" not in text
        assert "nav text" not in text

    def test_page_without_main_content(self):
        assert extract_main_content("<html><body><p>Not rustdoc</p></body></html>") is None


class TestDocsRsLoader:

    def test_crawls_module_pages(self):
        session = _site()

        result = DocsRsLoader(session=session).load("demo")

        assert result.version == "1.2.3"
        assert [doc.path for doc in result.documents] == [
            "demo/index.html",
            "demo/struct.Runtime.html",
            "demo/fn.spawn.html",
            "demo/task/index.html",
        ]
        assert "Async runtime." in result.documents[0].content
        assert "track()" not in result.documents[0].content
        assert session.headers["User-Agent"].startswith("cratedocs-populate")

    def test_skips_source_all_items_and_foreign_links(self):
        session = _site()
        DocsRsLoader(session=session).load("demo")

        assert not any("/src/" in url for url in session.requested)
        assert ROOT + "all.html" not in session.requested
        assert not any("other" in url or "rust-lang" in url for url in session.requested)
        assert session.requested.count(ROOT + "struct.Runtime.html") == 1

    def test_max_pages_caps_result(self):
        result = DocsRsLoader(session=_site()).load("demo", max_pages=2)

        assert len(result.documents) == 2

    def test_non_positive_max_pages_loads_nothing(self):
        session = _site()
        result = DocsRsLoader(session=session).load("demo", max_pages=0)

        assert result.documents == []
        assert session.requested == []

    def test_exact_version_selector(self):
        session = _site()
        result = DocsRsLoader(session=session).load("demo", version_selector="1.2.3", max_pages=1)

        assert session.requested[0] == ROOT
        assert result.version == "1.2.3"

    def test_version_from_sidebar_when_url_says_latest(self):
        latest = "https://docs.rs/demo/latest/demo/"
        session = FakeSession({latest + "index.html": _page("<p>Docs</p>", sidebar="<span class='version'>0.9.1</span>")},
                              redirects={latest: latest + "index.html"})

        result = DocsRsLoader(session=session).load("demo")

        assert result.version == "0.9.1"
        assert [doc.path for doc in result.documents] == ["demo/index.html"]

    def test_library_name_differing_from_crate_name(self):
        served = "https://docs.rs/md-5/0.10.6/md5/"
        session = FakeSession(
            {
                served + "index.html": _page("<h1>Crate md5</h1>", "<a href='type.Md5.html'>Md5</a>"),
                served + "type.Md5.html": _page("<h1>Type Md5</h1>"),
            },
            redirects={"https://docs.rs/md-5/latest/md_5/": served},
        )

        result = DocsRsLoader(session=session).load("md-5")

        assert result.version == "0.10.6"
        assert [doc.path for doc in result.documents] == ["md5/index.html", "md5/type.Md5.html"]

    def test_crate_name_case_follows_redirect(self):
        served = "https://docs.rs/serde/1.0.0/serde/"
        session = FakeSession(
            {
                served + "index.html": _page("<h1>Crate serde</h1>", "<a href='trait.Serialize.html'>Serialize</a>"),
                served + "trait.Serialize.html": _page("<h1>Trait Serialize</h1>"),
            },
            redirects={"https://docs.rs/Serde/latest/Serde/": served},
        )

        result = DocsRsLoader(session=session).load("Serde")

        assert result.version == "1.0.0"
        assert [doc.path for doc in result.documents] == ["serde/index.html", "serde/trait.Serialize.html"]

    def test_hyphenated_crate_uses_underscored_module(self):
        session = FakeSession({})
        with pytest.raises(CrateNotFoundError):
            DocsRsLoader(session=session).load("my-crate")

        assert session.requested == ["https://docs.rs/my-crate/latest/my_crate/"]

    def test_unknown_crate(self):
        with pytest.raises(CrateNotFoundError) as exc_info:
            DocsRsLoader(session=FakeSession({})).load("no-such-crate")
        assert exc_info.value.crate_name == "no-such-crate"

    def test_client_error_on_start_page(self):
        session = FakeSession({}, status={"https://docs.rs/demo/latest/demo/": 403})

        with pytest.raises(FetchError):
            DocsRsLoader(session=session).load("demo")

    def test_start_page_without_rustdoc_content(self):
        start = "https://docs.rs/demo/latest/demo/"
        session = FakeSession({start + "index.html": "<html><body>Build failed</body></html>"})

        with pytest.raises(ParseError):
            DocsRsLoader(session=session).load("demo")

    def test_broken_sub_page_is_skipped(self):
        session = _site()
        session.status[ROOT + "fn.spawn.html"] = 410

        result = DocsRsLoader(session=session).load("demo")

        assert "demo/fn.spawn.html" not in [doc.path for doc in result.documents]
        assert len(result.documents) == 3

    def test_connection_failure_is_retried(self, monkeypatch):
        import tenacity.nap

        monkeypatch.setattr(tenacity.nap.time, "sleep", lambda seconds: None)
        session = _site()
        calls = []
        real_get = session.get

        def flaky_get(url, timeout=None, allow_redirects=True):
            calls.append(url)
            if len(calls) == 1:
                raise requests.ConnectionError("reset by peer")
            return real_get(url, timeout=timeout, allow_redirects=allow_redirects)

        session.get = flaky_get

        result = DocsRsLoader(session=session).load("demo", max_pages=1)

        assert calls[:2] == ["https://docs.rs/demo/latest/demo/"] * 2
        assert result.version == "1.2.3"
