"""Tests for folded Set-Cookie splitting and session token extraction."""

import pytest

from hydroline_identity.service.cookies import (
    extract_tokens,
    normalize_cookie_key,
    parse_cookie_map,
    split_set_cookie,
)
from hydroline_identity.service.errors import AuthenticationError

EXPIRES = "Wed, 21 Oct 2026 07:28:00 GMT"


class TestSplitSetCookie:
    def test_expires_comma_does_not_split(self):
        header = (
            f"app.session_token=abc; Path=/; Expires={EXPIRES}; HttpOnly, "
            f"app.refresh_token=def; Path=/; Expires={EXPIRES}; HttpOnly"
        )
        cookies = split_set_cookie(header)
        assert cookies == [
            f"app.session_token=abc; Path=/; Expires={EXPIRES}; HttpOnly",
            f"app.refresh_token=def; Path=/; Expires={EXPIRES}; HttpOnly",
        ]

    def test_expires_as_last_attribute_still_splits(self):
        header = f"a.session_token=x; Expires={EXPIRES}, b.refresh_token=y"
        assert split_set_cookie(header) == [
            f"a.session_token=x; Expires={EXPIRES}",
            "b.refresh_token=y",
        ]

    def test_expires_attribute_is_case_insensitive(self):
        header = f"a.session_token=x; EXPIRES={EXPIRES}; Path=/, b=y"
        assert len(split_set_cookie(header)) == 2

    def test_empty_segments_are_discarded(self):
        assert split_set_cookie(" , ,a.session_token=x, ") == ["a.session_token=x"]

    def test_empty_header(self):
        assert split_set_cookie("") == []
        assert split_set_cookie(None) == []


class TestCookieMap:
    def test_normalize_by_suffix(self):
        assert normalize_cookie_key("hydroline.session_token") == "session_token"
        assert normalize_cookie_key("Other.Refresh_Token") == "refresh_token"
        assert normalize_cookie_key("x.dont_remember") == "dont_remember"
        assert normalize_cookie_key("x.session_data") == "session_data"
        assert normalize_cookie_key("session_token") is None
        assert normalize_cookie_key("tracking") is None

    def test_unknown_cookies_dropped_from_map(self):
        cookies = ["hydroline.session_token=abc; Path=/", "tracking=1; Path=/"]
        assert parse_cookie_map(cookies) == {"session_token": "abc"}


class TestExtractTokens:
    def test_refresh_token_preferred(self):
        header = "p.session_token=sess; Path=/, p.refresh_token=ref; Path=/"
        extracted = extract_tokens(header)
        assert extracted.token == "ref"
        assert extracted.cookie_map == {"session_token": "sess", "refresh_token": "ref"}

    def test_session_token_used_without_refresh(self):
        assert extract_tokens("p.session_token=sess").token == "sess"

    def test_fallback_token(self):
        assert extract_tokens("tracking=1", fallback_token="fallback").token == "fallback"

    def test_unmatched_cookies_kept_in_raw_list(self):
        extracted = extract_tokens(["tracking=1", "p.session_token=sess"])
        assert extracted.cookies == ["tracking=1", "p.session_token=sess"]
        assert "tracking" not in extracted.cookie_map

    def test_missing_token_raises(self):
        with pytest.raises(AuthenticationError) as excinfo:
            extract_tokens("tracking=1")
        assert excinfo.value.status_code == 401

    def test_none_input_raises(self):
        with pytest.raises(AuthenticationError):
            extract_tokens(None)
