from pathlib import Path

import pytest

from site_mirror import (
    link_path_for_url,
    local_path_for_url,
    normalize_url,
    storage_path_for_request,
    url_host,
)

HOST = "example.test"
BASE = "https://example.test/team"


@pytest.mark.parametrize(
    "href,expected",
    [
        ("profile", "https://example.test/profile"),
        ("/about/", "https://example.test/about/"),
        ("/about", "https://example.test/about"),
        ("/about#contact", "https://example.test/about"),
        ("#top", "https://example.test/team"),
        ("/list?page=2#x", "https://example.test/list?page=2"),
        ("HTTPS://Example.TEST/x", "https://example.test/x"),
        ("https://example.test:443/x", "https://example.test/x"),
        ("https://example.test", "https://example.test/"),
        ("  /padded  ", "https://example.test/padded"),
    ],
)
def test_normalize_resolves_same_host(href, expected):
    assert normalize_url(href, BASE, origin_host=HOST) == expected


@pytest.mark.parametrize(
    "href",
    [
        "https://other.test/x",
        "//cdn.test/lib.js",
        "https://example.test:8080/x",
        "mailto:someone@example.test",
        "javascript:void(0)",
        "tel:+3100000",
        "http://[::1",
        "https://example.test:notaport/",
        None,
    ],
)
def test_normalize_rejects(href):
    assert normalize_url(href, BASE, origin_host=HOST) is None


def test_trailing_slash_stays_distinct():
    a = normalize_url("/about", BASE, origin_host=HOST)
    b = normalize_url("/about/", BASE, origin_host=HOST)
    assert a != b


def test_url_host_keeps_non_default_port():
    assert url_host("http://Example.test:8080/") == "example.test:8080"
    assert url_host("http://example.test:80/") == "example.test"


@pytest.mark.parametrize(
    "url,rel",
    [
        ("https://example.test/", "index.html"),
        ("https://example.test/about/", "about/index.html"),
        ("https://example.test/team", "team.html"),
        ("https://example.test/docs/guide", "docs/guide.html"),
        ("https://example.test/a.html", "a.html"),
        ("https://example.test/files/report.pdf", "files/report.pdf"),
        ("https://example.test/list?page=2", "list.html"),
    ],
)
def test_local_path_for_url(tmp_path, url, rel):
    assert local_path_for_url(url, tmp_path) == tmp_path / Path(rel)


def test_local_path_refuses_dot_segments(tmp_path):
    with pytest.raises(ValueError):
        local_path_for_url("https://example.test/a/../../etc/passwd", tmp_path)


@pytest.mark.parametrize(
    "url,link",
    [
        ("https://example.test/", "/"),
        ("https://example.test/about/", "/about/"),
        ("https://example.test/profile", "/profile"),
        ("https://example.test/a.html", "/a"),
        ("https://example.test/files/report.pdf", "/files/report.pdf"),
    ],
)
def test_link_path_for_url(url, link):
    assert link_path_for_url(url) == link
    assert link_path_for_url(url) == link_path_for_url(url)


@pytest.mark.parametrize(
    "url",
    [
        "https://example.test/",
        "https://example.test/about/",
        "https://example.test/team",
        "https://example.test/docs/guide",
        "https://example.test/a.html",
    ],
)
def test_serving_rule_finds_mirrored_file(tmp_path, url):
    served = storage_path_for_request(link_path_for_url(url), tmp_path)
    assert served == local_path_for_url(url, tmp_path)
