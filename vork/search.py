"""Web search tool: queries DuckDuckGo's HTML endpoint and extracts results."""

import html.parser
import urllib.error
import urllib.parse
import urllib.request

from .errors import ToolError

DEFAULT_SEARCH_URL = "https://html.duckduckgo.com/html/"
MAX_RESPONSE_SIZE = 2 * 1024 * 1024  # 2 MB
MAX_RESULTS_CAP = 20

HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36",
    "Accept": "text/html,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


class _ResultExtractor(html.parser.HTMLParser):
    """Collect (title, url, snippet) from result__a / result__snippet elements."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.results: list[dict] = []
        self._field: str | None = None
        self._tag: str | None = None
        self._depth = 0
        self._buf: list[str] = []

    def handle_starttag(self, tag, attrs):
        if self._field is not None:
            if tag == self._tag:
                self._depth += 1
            return
        attr_map = dict(attrs)
        classes = (attr_map.get("class") or "").split()
        if "result__a" in classes:
            self.results.append(
                {"title": "", "url": _unwrap_redirect(attr_map.get("href") or ""), "snippet": ""}
            )
            self._start("title", tag)
        elif "result__snippet" in classes and self.results:
            self._start("snippet", tag)

    def handle_endtag(self, tag):
        if self._field is None or tag != self._tag:
            return
        if self._depth:
            self._depth -= 1
            return
        text = " ".join("".join(self._buf).split())
        if not self.results[-1][self._field]:
            self.results[-1][self._field] = text
        self._field = None
        self._tag = None

    def handle_data(self, data):
        if self._field is not None:
            self._buf.append(data)

    def _start(self, field: str, tag: str) -> None:
        self._field = field
        self._tag = tag
        self._depth = 0
        self._buf = []


def _unwrap_redirect(href: str) -> str:
    """DuckDuckGo wraps result links as /l/?uddg=<target>; return the target."""
    if href.startswith("//"):
        href = "https:" + href
    parsed = urllib.parse.urlparse(href)
    if parsed.path.startswith("/l/"):
        target = urllib.parse.parse_qs(parsed.query).get("uddg")
        if target:
            return target[0]
    return href


def parse_results(body: str, max_results: int) -> list[dict]:
    parser = _ResultExtractor()
    parser.feed(body)
    parser.close()
    return [r for r in parser.results if r["title"]][:max_results]


def format_results(results: list[dict]) -> str:
    if not results:
        return "No results found"
    blocks = [
        f"Title: {r['title']}\nURL: {r['url']}\nSnippet: {r['snippet']}\n"
        for r in results
    ]
    return "\n---\n\n".join(blocks)


def fetch_html(url: str, timeout: int = 30) -> str:
    req = urllib.request.Request(url, headers=HEADERS)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = resp.read(MAX_RESPONSE_SIZE)
            charset = resp.headers.get_content_charset() or "utf-8"
    except urllib.error.HTTPError as e:
        raise ToolError(f"search request failed: HTTP {e.code} {e.reason}") from e
    except urllib.error.URLError as e:
        raise ToolError(f"failed to fetch search results: {e.reason}") from e
    except (TimeoutError, OSError) as e:
        raise ToolError(f"failed to fetch search results: {e}") from e
    return data.decode(charset, errors="replace")


def web_search(
    query: str,
    max_results: int = 5,
    *,
    search_url: str = DEFAULT_SEARCH_URL,
    timeout: int = 30,
) -> str:
    """Run a search and return title/URL/snippet blocks as text."""
    if not query.strip():
        raise ToolError("query must not be empty")
    max_results = max(1, min(int(max_results), MAX_RESULTS_CAP))
    url = f"{search_url}?{urllib.parse.urlencode({'q': query})}"
    body = fetch_html(url, timeout=timeout)
    return format_results(parse_results(body, max_results))
