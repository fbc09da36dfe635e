"""Target URL validation tests."""

import pytest

from shortlink.url_validation import MAX_URL_LENGTH, validate_target_url


@pytest.mark.parametrize(
    "url",
    [
        "https://example.com",
        "http://example.com/path?query=1#frag",
        "https://sub.domain.example.co.uk:8443/a/b",
        "https://93.184.216.34/",
    ],
)
def test_accepts_public_http_urls(url: str) -> None:
    assert validate_target_url(url) == url


def test_strips_surrounding_whitespace() -> None:
    assert validate_target_url("  https://example.com/x  ") == "https://example.com/x"


@pytest.mark.parametrize(
    "url,message",
    [
        ("", "empty"),
        ("example.com", "http"),
        ("mailto:someone@example.com", "http"),
        ("file:///etc/passwd", "http"),
        ("http://", "host"),
        ("http://localhost:8080/", "Internal"),
        ("http://api.localhost/", "Internal"),
        ("http://127.0.0.1/", "Internal"),
        ("http://[::1]/", "Internal"),
        ("http://192.168.0.10/", "Internal"),
        ("http://172.16.3.4/", "Internal"),
        ("http://0.0.0.0/", "Internal"),
        ("http://169.254.169.254/", "Internal"),
        ("https://example.com:5432/", "Port"),
        ("https://example.com:27017/", "Port"),
        ("https://exa mple.com/", "Invalid"),
    ],
)
def test_rejects_unsafe_or_malformed_urls(url: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        validate_target_url(url)


def test_rejects_overlong_urls() -> None:
    url = "https://example.com/" + "a" * MAX_URL_LENGTH
    with pytest.raises(ValueError, match="at most"):
        validate_target_url(url)
