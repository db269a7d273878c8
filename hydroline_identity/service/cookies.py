"""Set-Cookie parsing for session cookies issued under a prefixed name."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from hydroline_identity.service.errors import AuthenticationError

SESSION_TOKEN = "session_token"
SESSION_DATA = "session_data"
REFRESH_TOKEN = "refresh_token"
DONT_REMEMBER = "dont_remember"

_CANONICAL_SUFFIXES = (SESSION_TOKEN, SESSION_DATA, REFRESH_TOKEN, DONT_REMEMBER)
# the only comma an Expires date may carry follows the weekday
_WEEKDAY = re.compile(r"^[A-Za-z]{3,9}$")


@dataclass
class ExtractedTokens:
    token: str
    cookie_map: Dict[str, str] = field(default_factory=dict)
    cookies: List[str] = field(default_factory=list)


def split_set_cookie(header: Optional[str]) -> List[str]:
    """Split a folded ``Set-Cookie`` header into individual cookies.

    Commas inside an ``Expires=`` date do not separate cookies.
    """
    if not header:
        return []
    cookies: List[str] = []
    current = ""
    inside_expires = False
    expires_start = 0
    for char in header:
        if char == ",":
            in_date = inside_expires and _WEEKDAY.match(current[expires_start:].strip())
            if not in_date:
                inside_expires = False
                if current.strip():
                    cookies.append(current.strip())
                current = ""
                continue
        current += char
        if not inside_expires and current.strip().lower().endswith("expires="):
            inside_expires = True
            expires_start = len(current)
        elif inside_expires and char == ";":
            inside_expires = False
    if current.strip():
        cookies.append(current.strip())
    return cookies


def normalize_cookie_key(name: str) -> Optional[str]:
    lowered = name.strip().lower()
    for suffix in _CANONICAL_SUFFIXES:
        if lowered.endswith(f".{suffix}"):
            return suffix
    return None


def parse_cookie_map(cookies: Iterable[str]) -> Dict[str, str]:
    """Reduce cookies to ``{canonical_name: value}``; other names are dropped."""
    mapping: Dict[str, str] = {}
    for cookie in cookies:
        name, sep, rest = cookie.partition("=")
        if not name.strip() or not sep:
            continue
        key = normalize_cookie_key(name)
        if key:
            mapping[key] = rest.split(";", 1)[0].strip()
    return mapping


def extract_tokens(
    set_cookie: Union[str, Iterable[str], None], fallback_token: Optional[str] = None
) -> ExtractedTokens:
    if set_cookie is None:
        headers: List[str] = []
    elif isinstance(set_cookie, str):
        headers = [set_cookie]
    else:
        headers = list(set_cookie)
    cookies = [c for header in headers for c in split_set_cookie(header)]
    cookie_map = parse_cookie_map(cookies)
    token = cookie_map.get(REFRESH_TOKEN) or cookie_map.get(SESSION_TOKEN) or fallback_token
    if not token:
        raise AuthenticationError("failed to obtain session token")
    return ExtractedTokens(token=token, cookie_map=cookie_map, cookies=cookies)
