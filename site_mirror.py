#!/usr/bin/env python3
import argparse
import logging
import os
import posixpath
import sys
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Dict, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import urljoin, urlparse, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup, FeatureNotFound
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_BASE_URL = "https://www.osteopathieapeldoorn.nl"
DEFAULT_MIRROR_DIR = os.path.join("public", "mirror")
DEFAULT_MAX_PAGES = 500
DEFAULT_CONCURRENCY = 5

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)
DEFAULT_HEADERS = {
    "User-Agent": DEFAULT_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

DEFAULT_PORTS = {"http": 80, "https": 443}
CRAWLABLE_SCHEMES = {"http", "https"}

STATUS_SAVED = "saved"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"

# -------------------- Settings --------------------


def _env_number(env: Mapping[str, str], name: str, cast, default):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class Settings:
    base_url: str = DEFAULT_BASE_URL
    mirror_dir: str = DEFAULT_MIRROR_DIR
    max_pages: int = DEFAULT_MAX_PAGES
    concurrency: int = DEFAULT_CONCURRENCY
    timeout: Optional[float] = None  # None: wait on the origin forever
    user_agent: str = DEFAULT_USER_AGENT

    @property
    def mirror_root(self) -> Path:
        return Path(self.mirror_dir)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from MIRROR_* environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            base_url=env.get("MIRROR_BASE_URL") or DEFAULT_BASE_URL,
            mirror_dir=env.get("MIRROR_DIR") or DEFAULT_MIRROR_DIR,
            max_pages=_env_number(env, "MIRROR_MAX_PAGES", int, DEFAULT_MAX_PAGES),
            concurrency=_env_number(
                env, "MIRROR_CONCURRENCY", int, DEFAULT_CONCURRENCY
            ),
            timeout=_env_number(env, "MIRROR_TIMEOUT", float, None),
            user_agent=env.get("MIRROR_USER_AGENT") or DEFAULT_USER_AGENT,
        )


# -------------------- URL normalize --------------------


def url_host(u: str) -> str:
    """Return the lowercased host[:port] of ``u`` with default ports dropped.

    Raises ValueError for a malformed authority (bad port, broken IPv6).
    """
    p = urlsplit(u)
    host = p.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    port = p.port
    if port is not None and port != DEFAULT_PORTS.get(p.scheme.lower()):
        host = f"{host}:{port}"
    return host


def normalize_url(href: Optional[str], base_url: str, *, origin_host: str) -> Optional[str]:
    """Resolve ``href`` against ``base_url`` into a canonical same-host URL.

    Returns None when the href cannot be resolved or points off the origin
    host. The fragment is dropped; the query and any trailing slash are
    kept, so ``/about`` and ``/about/`` are different pages.
    """
    if href is None:
        return None
    try:
        absolute = urljoin(base_url, href.strip())
        p = urlsplit(absolute)
        host = url_host(absolute)
    except ValueError:
        return None
    scheme = p.scheme.lower()
    if scheme not in CRAWLABLE_SCHEMES or not host or host != origin_host:
        return None
    return urlunsplit((scheme, host, p.path or "/", p.query, ""))


def absolutize(value: str, base_url: str) -> str:
    try:
        return urljoin(base_url, value.strip())
    except ValueError:
        return value


# -------------------- Output layout --------------------


def _path_segments(url_path: str) -> List[str]:
    segs = [seg for seg in url_path.split("/") if seg]
    if any(seg in (".", "..") for seg in segs):
        raise ValueError(f"refusing dot segment in path {url_path!r}")
    return segs


def local_path_for_url(page_url: str, mirror_root: Path) -> Path:
    """Where the mirrored copy of ``page_url`` lives on disk.

    ``/a/`` -> ``a/index.html``, ``/a`` -> ``a.html``; a path that already
    has an extension is kept as is. Query strings are ignored, so pages that
    differ only by query share one file.
    """
    path = urlsplit(page_url).path or "/"
    segs = _path_segments(path)
    if path.endswith("/"):
        return mirror_root.joinpath(*segs, "index.html")
    name = segs[-1]
    if not posixpath.splitext(name)[1]:
        segs[-1] = name + ".html"
    return mirror_root.joinpath(*segs)


def link_path_for_url(page_url: str) -> str:
    """The extension-less href a rewritten anchor points at."""
    path = urlsplit(page_url).path or "/"
    if path.endswith("/"):
        return path
    if path.endswith(".html"):
        return path[: -len(".html")]
    return path


def storage_path_for_request(request_path: str, mirror_root: Path) -> Path:
    """Serve-time rewrite: which mirrored file answers ``request_path``."""
    path = urlsplit(request_path).path or "/"
    segs = _path_segments(path)
    if path.endswith("/"):
        return mirror_root.joinpath(*segs, "index.html")
    segs[-1] = segs[-1] + ".html"
    return mirror_root.joinpath(*segs)


# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


def extract_anchor_links(
    soup: BeautifulSoup, page_url: str, *, origin_host: str
) -> List[str]:
    links: Dict[str, None] = {}
    for a in soup.select("a[href]"):
        n = normalize_url(a.get("href"), page_url, origin_host=origin_host)
        if n is not None:
            links[n] = None
    return list(links)


# -------------------- Rewriters --------------------

ASSET_SELECTORS = (
    ("img[src]", "src"),
    ("script[src]", "src"),
    ('link[rel~="stylesheet"][href]', "href"),
)


def rewrite_links_in_place(
    soup: BeautifulSoup, page_url: str, *, origin_host: str
) -> None:
    for a in soup.select("a[href]"):
        n = normalize_url(a.get("href"), page_url, origin_host=origin_host)
        if n is not None:
            a["href"] = link_path_for_url(n)


def rewrite_assets_in_place(soup: BeautifulSoup, page_url: str) -> None:
    # assets stay remote, only made absolute
    for selector, attr in ASSET_SELECTORS:
        for el in soup.select(selector):
            el[attr] = absolutize(el[attr], page_url)


def rewrite_page(page_url: str, html: str, *, origin_host: str) -> str:
    soup = bs4_parse(html)
    rewrite_links_in_place(soup, page_url, origin_host=origin_host)
    rewrite_assets_in_place(soup, page_url)
    return serialize_html(soup)


# -------------------- HTTP --------------------


class FetchError(Exception):
    def __init__(self, url: str, status: int):
        super().__init__(f"Failed {status} {url}")
        self.url = url
        self.status = status


def build_session(
    headers: Optional[Dict[str, str]] = None, pool_size: int = DEFAULT_CONCURRENCY
) -> requests.Session:
    s = requests.Session()
    # a failed page is abandoned, never retried
    retry = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(
        max_retries=retry, pool_connections=pool_size, pool_maxsize=pool_size
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def fetch_html(
    session: requests.Session, url: str, *, timeout: Optional[float]
) -> Tuple[Optional[str], str]:
    """GET ``url``; return ``(html, content_type)``, html is None for non-HTML.

    Raises FetchError on a non-2xx status.
    """
    r = session.get(url, timeout=timeout, allow_redirects=True)
    if not 200 <= r.status_code < 300:
        raise FetchError(url, r.status_code)
    ct = r.headers.get("Content-Type") or ""
    if "text/html" not in ct.lower():
        return None, ct
    if "charset" not in ct.lower():
        r.encoding = r.apparent_encoding or "utf-8"
    return r.text, ct


def save_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


# -------------------- Pipeline --------------------


@dataclass
class PageResult:
    url: str
    status: str
    path: Optional[Path] = None
    discovered: List[str] = field(default_factory=list)
    error: Optional[str] = None


def mirror_page(
    session: requests.Session,
    url: str,
    settings: Settings,
    *,
    origin_host: Optional[str] = None,
) -> PageResult:
    """Fetch one page, write its rewritten copy and return its same-host links.

    Never raises: any failure is logged and reported as a failed result
    with no discovered links.
    """
    if origin_host is None:
        origin_host = url_host(settings.base_url)
    try:
        html, content_type = fetch_html(session, url, timeout=settings.timeout)
        if html is None:
            logging.info("Skip non-HTML %s %s", content_type, url)
            return PageResult(url, STATUS_SKIPPED)

        out = local_path_for_url(url, settings.mirror_root)
        save_text(out, rewrite_page(url, html, origin_host=origin_host))

        # discovery reads the untouched markup, not the rewritten copy
        discovered = extract_anchor_links(
            bs4_parse(html), url, origin_host=origin_host
        )
        logging.info("Saved %s -> %s", url, out)
        return PageResult(url, STATUS_SAVED, path=out, discovered=discovered)
    except Exception as e:
        logging.warning("Error fetching %s: %s", url, e)
        return PageResult(url, STATUS_FAILED, error=str(e))


# -------------------- Scheduler --------------------


@dataclass
class CrawlStats:
    processed: int = 0
    saved: int = 0
    skipped: int = 0
    failed: int = 0
    enqueued: int = 0
    collisions: int = 0


class MirrorCrawler:
    """Bounded breadth-first crawl of one host over a fixed worker pool.

    The frontier, seen set and processed counter are only touched while
    holding ``_cond``. A worker that finds the frontier empty waits as long
    as another page is in flight, since that page may still add links.
    """

    def __init__(self, settings: Settings, session: requests.Session):
        self.settings = settings
        self.session = session
        self.origin_host = url_host(settings.base_url)
        seed = normalize_url(
            settings.base_url, settings.base_url, origin_host=self.origin_host
        )
        if seed is None:
            raise ValueError(f"invalid base URL: {settings.base_url}")
        self.seed = seed

        self._cond = threading.Condition()
        self._frontier: Deque[str] = deque([seed])
        self._seen: Set[str] = {seed}
        self._processed = 0
        self._in_flight = 0
        self._written: Dict[Path, str] = {}
        self.stats = CrawlStats(enqueued=1)

    @property
    def processed(self) -> int:
        with self._cond:
            return self._processed

    def claim(self) -> Optional[Tuple[str, int]]:
        """Pop the next URL and count it, or return None when the worker should stop."""
        with self._cond:
            while True:
                if self._processed >= self.settings.max_pages:
                    return None
                if self._frontier:
                    url = self._frontier.popleft()
                    self._processed += 1
                    self._in_flight += 1
                    return url, self._processed
                if self._in_flight == 0:
                    return None
                self._cond.wait()

    def complete(self, result: PageResult) -> int:
        """Record a finished page and enqueue its unseen links; return how many."""
        with self._cond:
            self._in_flight -= 1
            self._record(result)
            added = 0
            for link in result.discovered:
                if link in self._seen:
                    continue
                self._seen.add(link)
                self._frontier.append(link)
                added += 1
            self.stats.enqueued += added
            self._cond.notify_all()
            return added

    def _record(self, result: PageResult) -> None:
        if result.status == STATUS_SAVED:
            self.stats.saved += 1
            if result.path is not None:
                prev = self._written.get(result.path)
                if prev is not None and prev != result.url:
                    self.stats.collisions += 1
                    logging.warning(
                        "storage collision: %s and %s both map to %s (last write wins)",
                        prev,
                        result.url,
                        result.path,
                    )
                self._written[result.path] = result.url
        elif result.status == STATUS_SKIPPED:
            self.stats.skipped += 1
        else:
            self.stats.failed += 1

    def _worker(self) -> None:
        while True:
            claimed = self.claim()
            if claimed is None:
                return
            url, n = claimed
            logging.info("Fetch page [%d/%d]: %s", n, self.settings.max_pages, url)
            result = PageResult(url, STATUS_FAILED)
            try:
                result = mirror_page(
                    self.session, url, self.settings, origin_host=self.origin_host
                )
            finally:
                self.complete(result)

    def run(self) -> CrawlStats:
        workers = max(1, self.settings.concurrency)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._worker) for _ in range(workers)]
            for fut in as_completed(futures):
                fut.result()
        self.stats.processed = self.processed
        return self.stats


def mirror_site(
    settings: Settings, session: Optional[requests.Session] = None
) -> CrawlStats:
    root = settings.mirror_root
    logging.info("Mirroring from %s ...", settings.base_url)
    root.mkdir(parents=True, exist_ok=True)

    own_session = session is None
    if session is None:
        headers = {**DEFAULT_HEADERS, "User-Agent": settings.user_agent}
        session = build_session(headers, pool_size=max(1, settings.concurrency))
    try:
        stats = MirrorCrawler(settings, session).run()
    finally:
        if own_session:
            session.close()

    print(f"Done. Processed {stats.processed} pages.")
    print(
        f"Saved: {stats.saved}  Skipped: {stats.skipped}  Failed: {stats.failed}  "
        f"Enqueued: {stats.enqueued}  Collisions: {stats.collisions}"
    )
    print(f"Root: {root}")
    return stats


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib  # backport
            except ImportError:
                raise RuntimeError("TOML config requires Python 3.11+ or 'tomli'")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser(defaults: Optional[Settings] = None) -> argparse.ArgumentParser:
    d = defaults or Settings()
    p = argparse.ArgumentParser(
        description="Mirror one website into a static directory tree.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("--base-url", default=d.base_url, help="origin to crawl")
    p.add_argument("--out", default=d.mirror_dir, help="mirror root directory")
    p.add_argument("--max-pages", type=int, default=d.max_pages, help="page budget")
    p.add_argument(
        "--concurrency", type=int, default=d.concurrency, help="concurrent workers"
    )
    p.add_argument(
        "--timeout",
        type=float,
        default=d.timeout,
        help="request timeout seconds (default: none)",
    )
    p.add_argument("--user-agent", default=d.user_agent, help="User-Agent header")
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(
    argv: Optional[List[str]] = None, defaults: Optional[Settings] = None
) -> argparse.Namespace:
    parser = build_arg_parser(defaults)
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
            for g in ("crawl", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**{k.replace("-", "_"): v for k, v in flat.items()})
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        base_url=args.base_url,
        mirror_dir=str(args.out),
        max_pages=max(1, int(args.max_pages)),
        concurrency=max(1, int(args.concurrency)),
        timeout=float(args.timeout) if args.timeout is not None else None,
        user_agent=args.user_agent,
    )


def main(argv: Optional[List[str]] = None) -> None:
    try:
        env_settings = Settings.from_env()
    except ValueError as e:
        print(e)
        sys.exit(1)
    args = parse_args(argv, env_settings)
    if urlparse(args.base_url).scheme not in CRAWLABLE_SCHEMES:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)
    settings = settings_from_args(args)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        mirror_site(settings)
    except Exception as e:
        logging.error("mirror failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
