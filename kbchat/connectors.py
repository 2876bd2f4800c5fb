"""
Knowledge Source Connectors Module

Turns heterogeneous knowledge sources into a uniform stream of
(locator, content, title) items with progress reporting:
- Web: crawls pages under a start URL (httpx + trafilatura/BeautifulSoup)
- Confluence: pages of a wiki space (CQL search, cursor pagination)
- Notion: pages shared with an integration (search cursor pagination)
- Linear: issues and projects (GraphQL pageInfo pagination)
- GitHub Issues: closed issues of a repository (Link header pagination)
- YouTube: transcripts for a fixed list of video URLs (ScrapeCreators API)
- YouTube channel: transcripts for every video of a channel
  (ScrapeCreators continuation token pagination)
- Text: uploaded or pasted content, emitted as a single item

Design Rationale:
- Each connector only knows its own API client and pagination
- Shared behaviour (budget pre-flight, filters, progress math, per-item
  error isolation) lives in helpers every connector calls explicitly
- A failing item is reported and skipped, the run keeps going
- Progress is computed against the filtered item set so that
  completed + remaining stays constant for a run

Usage:
    group = KnowledgeGroup(id="kg1", scrape_id="acme", type="web",
                           url="https://docs.acme.dev")
    connector = make_connector(group)
    connector.process(group, listener)
"""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urldefrag, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from config.settings import ConnectorConfig, Settings, get_settings
from kbchat.errors import BudgetExceededError, SourceFetchError

logger = logging.getLogger(__name__)


class GroupStatus(str, Enum):
    """Lifecycle of a knowledge group processing run."""

    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def split_csv(value: Optional[str]) -> List[str]:
    """Split a comma separated setting into trimmed, non-empty parts."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class KnowledgeGroup:
    """
    Configuration for one ingestion run of one knowledge source.

    Attributes:
        id: Knowledge group identifier
        scrape_id: Tenant (collection) the content is indexed into
        type: Connector type (web, confluence, notion, linear,
            github_issues, youtube, youtube_channel, text)
        url: Start URL / repository URL / single video URL / channel URL
        urls: Fixed URL list (YouTube)
        api_key: Source API key or token
        email: Account email (Confluence basic auth)
        host: Source host (Confluence)
        include_url: Only process the item with exactly this URL
        skip_page_regex: Comma separated exclude patterns
        skip_issue_statuses: Comma separated issue status ids/names to skip
        skip_project_statuses: Comma separated project status ids/names to skip
        issue_states: Comma separated GitHub issue states to fetch
        match_prefix: Web crawl only follows links under the start URL
        page_limit: Web crawl page cap, also the channel video cap
            (defaults to settings)
        text: Uploaded or pasted content (text)
        status: Processing status
    """

    id: str
    scrape_id: str
    type: str
    title: str = ""
    url: Optional[str] = None
    urls: List[str] = field(default_factory=list)
    api_key: Optional[str] = None
    email: Optional[str] = None
    host: Optional[str] = None
    include_url: Optional[str] = None
    skip_page_regex: Optional[str] = None
    skip_issue_statuses: Optional[str] = None
    skip_project_statuses: Optional[str] = None
    issue_states: Optional[str] = None
    match_prefix: bool = True
    page_limit: Optional[int] = None
    text: Optional[str] = None
    status: GroupStatus = GroupStatus.IDLE

    def __post_init__(self):
        # Groups loaded from JSON carry the status as a plain string
        self.status = GroupStatus(self.status)

    @property
    def exclude_patterns(self) -> List[str]:
        return split_csv(self.skip_page_regex)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary without credentials."""
        return {
            "id": self.id,
            "scrape_id": self.scrape_id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "urls": list(self.urls),
            "include_url": self.include_url,
            "skip_page_regex": self.skip_page_regex,
            "status": self.status.value,
        }


@dataclass
class ContentItem:
    """A connector's unit of output."""

    locator: str
    title: str
    text: str


@dataclass
class ProgressEvent:
    """Progress of a run against the filtered item set."""

    completed: int
    remaining: int

    @property
    def total(self) -> int:
        return self.completed + self.remaining

    def to_dict(self) -> Dict[str, int]:
        return {"completed": self.completed, "remaining": self.remaining}


class ConnectorListener(ABC):
    """
    Receives the output of a connector run.

    Implementations persist items, surface errors and answer the credit
    gate. The ingestion runner provides the production implementation.
    """

    @abstractmethod
    def emit(
        self,
        locator: str,
        content: str,
        title: str,
        progress: Optional[ProgressEvent] = None,
    ) -> None:
        """Handle one content item."""
        pass

    @abstractmethod
    def report_error(
        self,
        locator: str,
        error: Exception,
        progress: Optional[ProgressEvent] = None,
    ) -> None:
        """Handle one failed item."""
        pass

    def has_budget(self) -> bool:
        """Credit gate. Returns False when no more content may be ingested."""
        return True


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def check_budget(listener: ConnectorListener, group: KnowledgeGroup) -> None:
    """Fail fast before any work if the credit gate is closed."""
    if not listener.has_budget():
        raise BudgetExceededError(
            f"Not enough credits to process knowledge group {group.id}"
        )


def compile_patterns(patterns: Sequence[str]) -> List[re.Pattern]:
    """Compile exclude patterns, raising ValueError for invalid ones."""
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise ValueError(f"Invalid exclude pattern {pattern!r}: {e}")
    return compiled


def is_excluded(patterns: Sequence[re.Pattern], *identifiers: Optional[str]) -> bool:
    """True if any pattern matches any of the given identifiers."""
    for identifier in identifiers:
        if identifier is None:
            continue
        if any(p.search(identifier) for p in patterns):
            return True
    return False


def normalize_url(url: str) -> str:
    return url.strip().rstrip("/").lower()


def matches_include(group: KnowledgeGroup, url: Optional[str]) -> bool:
    """Apply the optional single-URL include filter."""
    if not group.include_url:
        return True
    if url is None:
        return False
    return normalize_url(url) == normalize_url(group.include_url)


def run_items(
    listener: ConnectorListener,
    items: Sequence[Any],
    locator_of: Callable[[Any], str],
    fetch: Callable[[Any], ContentItem],
) -> int:
    """
    Fetch and emit every item of an already filtered list.

    Progress for the i-th attempted item is (i, total - i), reported for
    failed items as well. A failing fetch is reported as SourceFetchError
    and processing continues with the next item.

    Args:
        listener: Receiver of items, errors and the credit gate
        items: Filtered items, in emission order
        locator_of: Returns the locator of an item without fetching it
        fetch: Fetches and shapes one item

    Returns:
        Number of items emitted
    """
    total = len(items)
    emitted = 0

    for i, item in enumerate(items):
        if i > 0 and not listener.has_budget():
            logger.warning(f"Credit budget exhausted after {i}/{total} items")
            break

        locator = locator_of(item)
        progress = ProgressEvent(completed=i, remaining=total - i)

        try:
            content = fetch(item)
        except Exception as e:
            error = e if isinstance(e, SourceFetchError) else SourceFetchError(locator, str(e))
            logger.warning(f"Failed to process {locator}: {error.message}")
            listener.report_error(locator, error, progress)
            continue

        listener.emit(content.locator, content.text, content.title, progress)
        emitted += 1

    logger.info(f"Emitted {emitted}/{total} items")
    return emitted


def join_sections(*sections: Optional[str]) -> str:
    """Join non-empty markdown sections with blank lines."""
    return "\n\n".join(s.strip() for s in sections if s and s.strip())


BLOCK_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "pre", "blockquote", "tr"]


def html_to_markdown(html: str) -> str:
    """
    Convert an HTML fragment into lightweight markdown.

    Only block-level structure is kept: headings, paragraphs, list items,
    code blocks, quotes and table rows.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "nav", "footer", "svg"]):
        tag.decompose()

    lines: List[str] = []
    for element in soup.find_all(BLOCK_TAGS):
        if element.find_parent(BLOCK_TAGS):
            continue

        name = element.name
        if name == "pre":
            lines.append(f"```\n{element.get_text().strip()}\n```")
            continue
        if name == "tr":
            cells = [c.get_text(" ", strip=True) for c in element.find_all(["th", "td"])]
            if cells:
                lines.append("| " + " | ".join(cells) + " |")
            continue

        text = element.get_text(" ", strip=True)
        if not text:
            continue
        if name.startswith("h"):
            lines.append(f"{'#' * int(name[1])} {text}")
        elif name == "li":
            lines.append(f"- {text}")
        elif name == "blockquote":
            lines.append(f"> {text}")
        else:
            lines.append(text)

    if not lines:
        text = soup.get_text("\n", strip=True)
        return text
    return "\n\n".join(lines)


# ---------------------------------------------------------------------------
# Connectors
# ---------------------------------------------------------------------------


class BaseConnector(ABC):
    """
    Interface every source connector implements.

    Connectors hold their own HTTP client and configuration only; the
    run mechanics are delegated to the module level helpers.
    """

    def __init__(
        self,
        config: Optional[ConnectorConfig] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.config = config or get_settings().connectors
        self._client = client

    def _get_client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                follow_redirects=True,
                timeout=self.config.http_timeout,
                headers={"user-agent": self.config.user_agent},
            )
        return self._client

    def _wait(self) -> None:
        if self.config.rate_limit_wait > 0:
            time.sleep(self.config.rate_limit_wait)

    @abstractmethod
    def process(self, group: KnowledgeGroup, listener: ConnectorListener) -> int:
        """
        Enumerate, filter, fetch and emit the source's items.

        Args:
            group: Knowledge group configuration
            listener: Receiver of items, errors and the credit gate

        Returns:
            Number of items emitted

        Raises:
            BudgetExceededError: If the credit gate is closed before starting
            ValueError: If the group is misconfigured
        """
        pass


class WebConnector(BaseConnector):
    """
    Crawls web pages starting at a URL.

    The crawl runs first (following links on the same host, or under the
    start URL when match_prefix is set) until the frontier is empty or the
    page limit is hit. Pages are then shaped and emitted in crawl order so
    progress is computed against a known total.
    """

    @staticmethod
    def clean_url(url: str) -> str:
        url = url.strip()
        if not url.startswith(("http://", "https://")):
            url = "https://" + url
        return urldefrag(url)[0]

    def _allowed(self, url: str, start: str, match_prefix: bool) -> bool:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            return False
        if match_prefix:
            return url.startswith(start.rstrip("/"))
        return parsed.netloc == urlparse(start).netloc

    def _extract_links(self, html: str, base_url: str) -> List[str]:
        soup = BeautifulSoup(html, "html.parser")
        links = []
        for anchor in soup.find_all("a", href=True):
            href = anchor["href"].strip()
            if href.startswith(("mailto:", "tel:", "javascript:")):
                continue
            links.append(urldefrag(urljoin(base_url, href))[0])
        return links

    def crawl(self, group: KnowledgeGroup) -> List[Tuple[str, Any]]:
        """
        Discover pages reachable from the start URL.

        Returns:
            List of (url, html or exception) in crawl order
        """
        if not group.url:
            raise ValueError("Web knowledge group requires a url")

        start = self.clean_url(group.include_url or group.url)
        limit = group.page_limit or self.config.web_page_limit
        patterns = compile_patterns(group.exclude_patterns)
        follow_links = not group.include_url

        client = self._get_client()
        frontier = deque([start])
        seen = {start}
        pages: List[Tuple[str, Any]] = []

        while frontier and len(pages) < limit:
            url = frontier.popleft()
            if is_excluded(patterns, urlparse(url).path, url):
                logger.debug(f"Skipping excluded page {url}")
                continue

            try:
                response = client.get(url)
                response.raise_for_status()
                content_type = response.headers.get("content-type", "")
                if "html" not in content_type:
                    raise SourceFetchError(url, f"Unsupported content type: {content_type}")
                html = response.text
            except Exception as e:
                pages.append((url, e))
                continue

            pages.append((url, html))

            if not follow_links:
                continue
            for link in self._extract_links(html, url):
                if link not in seen and self._allowed(link, start, group.match_prefix):
                    seen.add(link)
                    frontier.append(link)

        logger.info(f"Crawled {len(pages)} pages from {start}")
        return pages

    def _shape(self, url: str, html: str) -> ContentItem:
        import trafilatura

        soup = BeautifulSoup(html, "html.parser")
        title = soup.title.get_text(strip=True) if soup.title else ""

        body = trafilatura.extract(
            html,
            url=url,
            include_comments=False,
            include_tables=True,
            favor_recall=True,
        ) or ""
        if len(body) < 200:
            body = html_to_markdown(html)

        if not body.strip():
            raise SourceFetchError(url, "No content found on page")

        title = title or url
        return ContentItem(locator=url, title=title, text=join_sections(f"# {title}", body))

    def process(self, group: KnowledgeGroup, listener: ConnectorListener) -> int:
        check_budget(listener, group)
        pages = [(url, result) for url, result in self.crawl(group) if matches_include(group, url)]

        def fetch(page: Tuple[str, Any]) -> ContentItem:
            url, result = page
            if isinstance(result, Exception):
                raise result
            return self._shape(url, result)

        return run_items(listener, pages, lambda page: page[0], fetch)


class ConfluenceConnector(BaseConnector):
    """Pages of a Confluence Cloud site, enumerated with CQL."""

    PAGE_SIZE = 50

    def _auth(self, group: KnowledgeGroup) -> httpx.BasicAuth:
        if not group.api_key:
            raise ValueError("Confluence API key is required")
        if not group.email:
            raise ValueError("Confluence email is required")
        if not group.host:
            raise ValueError("Confluence host is required")
        return httpx.BasicAuth(group.email, group.api_key)

    @staticmethod
    def _next_cursor(next_link: Optional[str]) -> Optional[str]:
        if not next_link:
            return None
        values = parse_qs(urlparse(next_link).query).get("cursor")
        return values[0] if values else None

    def list_pages(self, group: KnowledgeGroup) -> List[Dict[str, str]]:
        """Enumerate every page id/title/url using cursor pagination."""
        auth = self._auth(group)
        host = group.host.rstrip("/")
        client = self._get_client()
        pages: List[Dict[str, str]] = []
        cursor: Optional[str] = None

        while True:
            params = {"cql": "type = 'page'", "limit": self.PAGE_SIZE}
            if cursor:
                params["cursor"] = cursor
            response = client.get(f"{host}/wiki/rest/api/content/search", params=params, auth=auth)
            response.raise_for_status()
            data = response.json()

            for page in data.get("results", []):
                tinyui = page.get("_links", {}).get("tinyui", f"/pages/{page['id']}")
                pages.append({
                    "id": str(page["id"]),
                    "title": page.get("title") or "Untitled",
                    "url": f"{host}/wiki{tinyui}",
                })

            cursor = self._next_cursor(data.get("_links", {}).get("next"))
            if not cursor:
                break
            self._wait()

        logger.info(f"Found {len(pages)} Confluence pages on {host}")
        return pages

    def fetch_page(self, group: KnowledgeGroup, page: Dict[str, str]) -> ContentItem:
        host = group.host.rstrip("/")
        response = self._get_client().get(
            f"{host}/wiki/rest/api/content/{page['id']}",
            params={"expand": "body.view,version,space"},
            auth=self._auth(group),
        )
        response.raise_for_status()
        data = response.json()

        html = data.get("body", {}).get("view", {}).get("value")
        if not html:
            raise SourceFetchError(page["url"], "Page content not found")

        properties = {}
        if data.get("space", {}).get("name"):
            properties["space"] = data["space"]["name"]
        if data.get("version", {}).get("when"):
            properties["updated"] = data["version"]["when"]

        text = join_sections(
            f"# {page['title']}",
            f"<properties>\n{json.dumps(properties)}\n</properties>" if properties else None,
            html_to_markdown(html),
        )
        return ContentItem(locator=page["url"], title=page["title"], text=text)

    def process(self, group: KnowledgeGroup, listener: ConnectorListener) -> int:
        check_budget(listener, group)
        patterns = compile_patterns(group.exclude_patterns)

        pages = [
            page for page in self.list_pages(group)
            if not is_excluded(patterns, page["id"], page["url"])
            and matches_include(group, page["url"])
        ]
        return run_items(
            listener, pages, lambda page: page["url"], lambda page: self.fetch_page(group, page)
        )


class NotionConnector(BaseConnector):
    """Pages shared with a Notion integration."""

    API_URL = "https://api.notion.com/v1"
    NOTION_VERSION = "2022-06-28"

    def _headers(self, group: KnowledgeGroup) -> Dict[str, str]:
        if not group.api_key:
            raise ValueError("Notion API key is required")
        return {
            "Authorization": f"Bearer {group.api_key}",
            "Notion-Version": self.NOTION_VERSION,
        }

    def _paginate(
        self,
        group: KnowledgeGroup,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        client = self._get_client()
        results: List[Dict[str, Any]] = []
        cursor: Optional[str] = None

        while True:
            if method == "POST":
                payload = dict(body or {})
                if cursor:
                    payload["start_cursor"] = cursor
                response = client.post(f"{self.API_URL}{path}", json=payload, headers=self._headers(group))
            else:
                query = dict(params or {})
                if cursor:
                    query["start_cursor"] = cursor
                response = client.get(f"{self.API_URL}{path}", params=query, headers=self._headers(group))
            response.raise_for_status()
            data = response.json()

            results.extend(data.get("results", []))
            cursor = data.get("next_cursor") if data.get("has_more") else None
            if not cursor:
                return results

    @staticmethod
    def _plain(rich_text: Iterable[Dict[str, Any]]) -> str:
        return "".join(t.get("plain_text", "") for t in rich_text)

    def page_title(self, page: Dict[str, Any]) -> Optional[str]:
        for prop in page.get("properties", {}).values():
            if prop.get("type") == "title" and prop.get("title"):
                return self._plain(prop["title"])
        return None

    def page_properties(self, page: Dict[str, Any]) -> Dict[str, str]:
        properties = {}
        for key, prop in page.get("properties", {}).items():
            if prop.get("type") == "rich_text" and prop.get("rich_text"):
                properties[key] = prop["rich_text"][0].get("plain_text", "")
            elif prop.get("type") == "status" and prop.get("status"):
                properties[key] = prop["status"].get("name", "")
        return properties

    def page_comments(self, group: KnowledgeGroup, page_id: str) -> List[Dict[str, str]]:
        try:
            comments = self._paginate(group, "GET", "/comments", params={"block_id": page_id})
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (403, 404) and "restricted_resource" in e.response.text:
                return []
            raise
        return [
            {
                "author": comment.get("created_by", {}).get("id", "unknown"),
                "text": self._plain(comment.get("rich_text", [])),
                "created_time": comment.get("created_time", ""),
            }
            for comment in comments
        ]

    def _block_text(self, block: Dict[str, Any]) -> str:
        kind = block.get("type", "")
        value = block.get(kind, {}) or {}
        text = self._plain(value.get("rich_text", []))

        if kind.startswith("heading_"):
            return f"{'#' * int(kind[-1])} {text}"
        if kind in ("bulleted_list_item", "toggle"):
            return f"- {text}"
        if kind == "numbered_list_item":
            return f"1. {text}"
        if kind == "to_do":
            return f"- [{'x' if value.get('checked') else ' '}] {text}"
        if kind in ("quote", "callout"):
            return f"> {text}"
        if kind == "code":
            return f"```{value.get('language', '')}\n{text}\n```"
        if kind == "divider":
            return "---"
        return text

    def page_markdown(self, group: KnowledgeGroup, block_id: str, depth: int = 0) -> str:
        lines = []
        for block in self._paginate(group, "GET", f"/blocks/{block_id}/children", params={"page_size": 100}):
            text = self._block_text(block)
            if text:
                lines.append("  " * depth + text)
            if block.get("has_children") and depth < 2 and block.get("type") != "child_page":
                nested = self.page_markdown(group, block["id"], depth + 1)
                if nested:
                    lines.append(nested)
        return "\n".join(lines)

    def fetch_page(self, group: KnowledgeGroup, page: Dict[str, Any]) -> ContentItem:
        title = self.page_title(page) or "Untitled"
        properties = self.page_properties(page)
        comments = self.page_comments(group, page["id"])

        text = join_sections(
            f"# {title}",
            f"<properties>\n{json.dumps(properties)}\n</properties>" if properties else None,
            f"<comments>\n{json.dumps(comments)}\n</comments>" if comments else None,
            self.page_markdown(group, page["id"]),
        )
        return ContentItem(locator=page["url"], title=title, text=text)

    def process(self, group: KnowledgeGroup, listener: ConnectorListener) -> int:
        check_budget(listener, group)
        patterns = compile_patterns(group.exclude_patterns)

        pages = self._paginate(
            group, "POST", "/search",
            body={"filter": {"property": "object", "value": "page"}, "page_size": 100},
        )
        pages = [
            page for page in pages
            if not is_excluded(patterns, page["id"], page.get("url"))
            and matches_include(group, page.get("url"))
        ]
        logger.info(f"Found {len(pages)} Notion pages to process")
        return run_items(
            listener, pages, lambda page: page["url"], lambda page: self.fetch_page(group, page)
        )


class LinearConnector(BaseConnector):
    """Issues and projects of a Linear workspace via GraphQL."""

    API_URL = "https://api.linear.app/graphql"

    ISSUES_QUERY = """
    query Issues($after: String) {
      issues(first: 50, after: $after) {
        nodes { id identifier title description url state { id name } }
        pageInfo { hasNextPage endCursor }
      }
    }"""

    ISSUE_COMMENTS_QUERY = """
    query IssueComments($id: String!, $after: String) {
      issue(id: $id) {
        comments(first: 50, after: $after) {
          nodes { body user { name } }
          pageInfo { hasNextPage endCursor }
        }
      }
    }"""

    PROJECTS_QUERY = """
    query Projects($after: String) {
      projects(first: 50, after: $after) {
        nodes { id name description content url status { id name } }
        pageInfo { hasNextPage endCursor }
      }
    }"""

    PROJECT_UPDATES_QUERY = """
    query ProjectUpdates($id: String!, $after: String) {
      project(id: $id) {
        projectUpdates(first: 50, after: $after) {
          nodes { body user { name } }
          pageInfo { hasNextPage endCursor }
        }
      }
    }"""

    def _query(self, group: KnowledgeGroup, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        if not group.api_key:
            raise ValueError("Linear API key is required")
        response = self._get_client().post(
            self.API_URL,
            json={"query": query, "variables": variables},
            headers={"Authorization": group.api_key},
        )
        response.raise_for_status()
        payload = response.json()
        if payload.get("errors"):
            raise RuntimeError(f"Linear API error: {payload['errors'][0].get('message')}")
        return payload["data"]

    def _connection(
        self,
        group: KnowledgeGroup,
        query: str,
        path: Sequence[str],
        variables: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Walk a GraphQL connection until hasNextPage is false."""
        nodes: List[Dict[str, Any]] = []
        after: Optional[str] = None
        while True:
            data = self._query(group, query, {**(variables or {}), "after": after})
            for key in path:
                data = data[key]
            nodes.extend(data["nodes"])
            if not data["pageInfo"]["hasNextPage"]:
                return nodes
            after = data["pageInfo"]["endCursor"]
            self._wait()

    @staticmethod
    def _status_matches(status: Optional[Dict[str, Any]], skipped: List[str]) -> bool:
        if not status or not skipped:
            return False
        return status.get("id") in skipped or status.get("name") in skipped

    def fetch_issue(self, group: KnowledgeGroup, issue: Dict[str, Any]) -> ContentItem:
        comments = self._connection(
            group, self.ISSUE_COMMENTS_QUERY, ["issue", "comments"], {"id": issue["id"]}
        )
        status = (issue.get("state") or {}).get("name")
        title = issue.get("title") or "Untitled"

        text = join_sections(
            f"# {title}",
            f"Status: {status}" if status else None,
            "### Comments\n" + "\n\n".join(
                f"{(c.get('user') or {}).get('name', 'unknown')}: {c['body']}" for c in comments
            ) if comments else None,
            issue.get("description"),
        )
        return ContentItem(locator=issue["url"], title=title, text=text)

    def fetch_project(self, group: KnowledgeGroup, project: Dict[str, Any]) -> ContentItem:
        updates = self._connection(
            group, self.PROJECT_UPDATES_QUERY, ["project", "projectUpdates"], {"id": project["id"]}
        )
        status = (project.get("status") or {}).get("name")
        name = project.get("name") or "Untitled"

        text = join_sections(
            f"# {name}",
            f"Status: {status}" if status else None,
            "### Updates\n" + "\n\n".join(
                f"{(u.get('user') or {}).get('name', 'unknown')}: {u['body']}" for u in updates
            ) if updates else None,
            project.get("description"),
            project.get("content"),
        )
        return ContentItem(locator=project["url"], title=name, text=text)

    def process(self, group: KnowledgeGroup, listener: ConnectorListener) -> int:
        check_budget(listener, group)
        patterns = compile_patterns(group.exclude_patterns)
        skip_issue_statuses = split_csv(group.skip_issue_statuses)
        skip_project_statuses = split_csv(group.skip_project_statuses)

        issues = [
            issue for issue in self._connection(group, self.ISSUES_QUERY, ["issues"])
            if not is_excluded(patterns, issue["id"], issue.get("identifier"), issue["url"])
            and not self._status_matches(issue.get("state"), skip_issue_statuses)
            and matches_include(group, issue["url"])
        ]
        projects = [
            project for project in self._connection(group, self.PROJECTS_QUERY, ["projects"])
            if not is_excluded(patterns, project["id"], project["url"])
            and not self._status_matches(project.get("status"), skip_project_statuses)
            and matches_include(group, project["url"])
        ]
        logger.info(f"Found {len(issues)} Linear issues and {len(projects)} projects")

        items = [("issue", issue) for issue in issues] + [("project", p) for p in projects]

        def fetch(item: Tuple[str, Dict[str, Any]]) -> ContentItem:
            kind, node = item
            if kind == "issue":
                return self.fetch_issue(group, node)
            return self.fetch_project(group, node)

        return run_items(listener, items, lambda item: item[1]["url"], fetch)


class GithubIssuesConnector(BaseConnector):
    """Issues (not pull requests) of a GitHub repository."""

    API_URL = "https://api.github.com"
    URL_PATTERN = re.compile(r"https://(?:www\.)?github\.com/([^/]+)/([^/?#]+)")

    def _headers(self, group: KnowledgeGroup) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        token = group.api_key or self.config.github_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _repo(self, group: KnowledgeGroup) -> Tuple[str, str]:
        match = self.URL_PATTERN.match(group.url or "")
        if not match:
            raise ValueError(f"Invalid GitHub URL: {group.url}")
        owner, repo = match.groups()
        return owner, repo.removesuffix(".git")

    def _get_pages(self, group: KnowledgeGroup, url: str, params: Dict[str, Any], limit: Optional[int] = None):
        """Follow rel="next" Link headers, yielding each page's JSON list."""
        client = self._get_client()
        fetched = 0
        next_url: Optional[str] = url
        while next_url:
            response = client.get(next_url, params=params, headers=self._headers(group))
            response.raise_for_status()
            page = response.json()
            yield page
            fetched += len(page)
            if limit is not None and fetched >= limit:
                return
            next_url = response.links.get("next", {}).get("url")
            params = None  # next links already carry the query
            if next_url:
                self._wait()

    def list_issues(self, group: KnowledgeGroup) -> List[Dict[str, Any]]:
        owner, repo = self._repo(group)
        states = split_csv(group.issue_states) or ["closed"]
        state = states[0] if len(states) == 1 else "all"
        limit = self.config.github_max_issues

        issues: List[Dict[str, Any]] = []
        pages = self._get_pages(
            group, f"{self.API_URL}/repos/{owner}/{repo}/issues",
            {"state": state, "per_page": 10}, limit=limit,
        )
        for page in pages:
            issues.extend(issue for issue in page if "pull_request" not in issue)
            if len(issues) >= limit:
                break
        return issues[:limit]

    def fetch_issue(self, group: KnowledgeGroup, issue: Dict[str, Any]) -> ContentItem:
        owner, repo = self._repo(group)
        comments = []
        timeline_url = f"{self.API_URL}/repos/{owner}/{repo}/issues/{issue['number']}/timeline"
        for page in self._get_pages(group, timeline_url, {"per_page": 100}):
            for event in page:
                if event.get("event") == "commented" and event.get("body"):
                    author = (event.get("actor") or event.get("user") or {}).get("login", "unknown")
                    comments.append(f"{author}: {event['body']}")

        labels = ", ".join(label["name"] for label in issue.get("labels", []) if label.get("name"))
        properties = f"State: {issue.get('state')}" + (f"\nLabels: {labels}" if labels else "")
        author = (issue.get("user") or {}).get("login", "unknown")
        title = issue.get("title") or "Untitled"

        text = join_sections(
            f"# {title}",
            properties,
            "### Comments\n" + "\n---\n".join(comments) if comments else None,
            f"{author}: {issue.get('body') or ''}",
        )
        return ContentItem(locator=issue["html_url"], title=title, text=text)

    def process(self, group: KnowledgeGroup, listener: ConnectorListener) -> int:
        check_budget(listener, group)
        patterns = compile_patterns(group.exclude_patterns)

        issues = [
            issue for issue in self.list_issues(group)
            if not is_excluded(patterns, str(issue["number"]), issue["html_url"])
            and matches_include(group, issue["html_url"])
        ]
        logger.info(f"Found {len(issues)} GitHub issues to process")
        return run_items(
            listener, issues, lambda issue: issue["html_url"], lambda issue: self.fetch_issue(group, issue)
        )


class YoutubeConnector(BaseConnector):
    """Transcripts for a fixed list of YouTube videos."""

    API_URL = "https://api.scrapecreators.com/v1/youtube/video"

    def _api_key(self) -> str:
        if not self.config.scrapecreators_api_key:
            raise ValueError("SCRAPECREATORS_API_KEY is not configured")
        return self.config.scrapecreators_api_key

    def fetch_video(self, url: str) -> ContentItem:
        response = self._get_client().get(
            self.API_URL,
            params={"url": url, "get_transcript": "true"},
            headers={"x-api-key": self._api_key()},
        )
        response.raise_for_status()
        data = response.json()

        transcript = data.get("transcript_only_text") or ""
        if not transcript and data.get("transcript"):
            transcript = " ".join(part.get("text", "") for part in data["transcript"]).strip()
        if not transcript:
            raise SourceFetchError(url, "No transcript content found for this video")

        title = data.get("title") or "YouTube Video"
        channel = (data.get("channel") or {}).get("title") if isinstance(data.get("channel"), dict) else None
        properties = f"Channel: {channel}" if channel else None

        text = join_sections(f"# {title}", properties, transcript)
        return ContentItem(locator=url, title=title, text=text)

    def process(self, group: KnowledgeGroup, listener: ConnectorListener) -> int:
        check_budget(listener, group)
        self._api_key()
        patterns = compile_patterns(group.exclude_patterns)

        urls = list(group.urls) or ([group.url] if group.url else [])
        if not urls:
            raise ValueError("YouTube knowledge group requires url or urls")

        urls = [
            url for url in urls
            if not is_excluded(patterns, url) and matches_include(group, url)
        ]
        return run_items(listener, urls, lambda url: url, self.fetch_video)


class YoutubeChannelConnector(YoutubeConnector):
    """Transcripts for every video of a YouTube channel."""

    CHANNEL_URL = "https://api.scrapecreators.com/v1/youtube/channel-videos"
    CHANNEL_ID_PATTERN = re.compile(r"^UC[\w-]{22}$")

    def channel_params(self, channel: str) -> Dict[str, str]:
        """
        Map a channel URL, id or handle to ScrapeCreators query params.

        Accepts /channel/<id>, /@handle, /c/<name> and /user/<name> URLs as
        well as a bare channel id or @handle.
        """
        channel = channel.strip()
        path = urlparse(channel).path if channel.startswith("http") else ""
        for prefix, key in (("/channel/", "channelId"), ("/@", "handle"), ("/c/", "handle"), ("/user/", "handle")):
            if path.startswith(prefix):
                value = path[len(prefix):].split("/")[0]
                if value:
                    return {key: value}
        if path:
            raise ValueError(f"Invalid YouTube channel URL: {channel}")

        if self.CHANNEL_ID_PATTERN.match(channel):
            return {"channelId": channel}
        return {"handle": channel.removeprefix("@")}

    def list_videos(self, group: KnowledgeGroup) -> List[Dict[str, Any]]:
        """Follow nextPageToken until the channel is exhausted or the cap is hit."""
        if not group.url:
            raise ValueError("YouTube channel knowledge group requires url")

        params = self.channel_params(group.url)
        limit = group.page_limit or self.config.web_page_limit
        client = self._get_client()
        videos: List[Dict[str, Any]] = []
        token: Optional[str] = None
        seen_tokens = set()

        while True:
            page_params = dict(params)
            if token:
                page_params["continuationToken"] = token
            response = client.get(self.CHANNEL_URL, params=page_params, headers={"x-api-key": self._api_key()})
            response.raise_for_status()
            data = response.json()
            videos.extend(data.get("videos") or [])

            token = data.get("nextPageToken")
            if not token or token in seen_tokens or len(videos) >= limit:
                break
            seen_tokens.add(token)
            self._wait()

        logger.info(f"Found {len(videos)} videos on channel {group.url}")
        return videos[:limit]

    def process(self, group: KnowledgeGroup, listener: ConnectorListener) -> int:
        check_budget(listener, group)
        self._api_key()
        patterns = compile_patterns(group.exclude_patterns)

        urls = [
            video["url"] for video in self.list_videos(group)
            if video.get("url")
            and not is_excluded(patterns, video["url"], video.get("id"), video.get("title"))
            and matches_include(group, video["url"])
        ]
        return run_items(listener, urls, lambda url: url, self.fetch_video)


class TextConnector(BaseConnector):
    """Uploaded or pasted text, stored as one item."""

    def process(self, group: KnowledgeGroup, listener: ConnectorListener) -> int:
        check_budget(listener, group)
        if not group.text or not group.text.strip():
            raise ValueError("Text knowledge group requires text")

        locator = group.url or f"text://{group.id}"
        title = group.title or "Untitled"
        item = ContentItem(locator=locator, title=title, text=group.text.strip())
        return run_items(listener, [item], lambda item: item.locator, lambda item: item)


CONNECTORS = {
    "web": WebConnector,
    "confluence": ConfluenceConnector,
    "notion": NotionConnector,
    "linear": LinearConnector,
    "github_issues": GithubIssuesConnector,
    "youtube": YoutubeConnector,
    "youtube_channel": YoutubeChannelConnector,
    "text": TextConnector,
}


def make_connector(
    group: KnowledgeGroup,
    settings: Optional[Settings] = None,
    client: Optional[httpx.Client] = None,
) -> BaseConnector:
    """
    Create the connector for a knowledge group's source type.

    Args:
        group: Knowledge group configuration
        settings: Optional settings (default: global settings)
        client: Optional shared httpx client

    Returns:
        Connector instance

    Raises:
        ValueError: If the source type is unknown
    """
    settings = settings or get_settings()
    connector_cls = CONNECTORS.get(group.type)
    if connector_cls is None:
        raise ValueError(f"Unknown knowledge group type: {group.type}")
    return connector_cls(config=settings.connectors, client=client)
