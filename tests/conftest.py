import threading

import pytest
import requests

import site_mirror


def make_response(url, status=200, body="", content_type="text/html; charset=utf-8"):
    r = requests.Response()
    r.url = url
    r.status_code = status
    r._content = body.encode("utf-8") if isinstance(body, str) else body
    if content_type is not None:
        r.headers["Content-Type"] = content_type
    r.encoding = requests.utils.get_encoding_from_headers(r.headers)
    return r


class FakeSession:
    """Serves canned pages keyed by URL; unknown URLs answer 404."""

    def __init__(self, pages):
        self.pages = pages
        self.requested = []
        self._lock = threading.Lock()

    def get(self, url, timeout=None, allow_redirects=True):
        with self._lock:
            self.requested.append(url)
        entry = self.pages.get(url)
        if entry is None:
            return make_response(url, 404, "not found")
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, tuple):
            body, content_type = entry
            return make_response(url, 200, body, content_type)
        if isinstance(entry, int):
            return make_response(url, entry, "")
        return make_response(url, 200, entry)

    def close(self):
        pass


@pytest.fixture
def settings(tmp_path):
    return site_mirror.Settings(
        base_url="https://example.test",
        mirror_dir=str(tmp_path / "mirror"),
        max_pages=50,
        concurrency=3,
    )
