"""
Place identifier derivation.

Place pages identify a listing in several ways: a hex feature id
(``0x89c259af18b60165:0x9f6d0d1f0e1f0c1a``), a ``ChIJ...`` place id, or an
opaque token carried in the ``data=`` / ``pb=`` URL parameters. Each way is a
named strategy; ``KeyExtractor`` tries them in order and returns the first hit.
"""

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Sequence, Union


HEX_FEATURE_ID = re.compile(r'0x[0-9a-fA-F]+:0x[0-9a-fA-F]+')
CHIJ_PLACE_ID = re.compile(r'ChIJ[A-Za-z0-9_-]{10,}')
DATA_PARAM_ID = re.compile(r'!1s([^!?&#/]+)')
NEW_FORMAT_ID = re.compile(r'!19s([^!?&#]+)')
PLACE_SLUG = re.compile(r'/place/([^/@?]+)')

XSSI_PREFIX = ")]}'"


class KeyFormat(Enum):
    """Identifier families; only keys of the same family are comparable."""
    HEX = "hex"
    CHIJ = "chij"
    OPAQUE = "opaque"


@dataclass(frozen=True)
class KeyStrategy:
    """A named way of pulling a place key out of a source."""
    name: str
    extract: Callable[[Any], Optional[str]]

    def __call__(self, source: Any) -> Optional[str]:
        return self.extract(source)


def _search(pattern: re.Pattern, text: str, group: int = 0) -> Optional[str]:
    match = pattern.search(text)
    return match.group(group) if match else None


def _hex_feature_id(text: str) -> Optional[str]:
    return _search(HEX_FEATURE_ID, text)


def _chij_place_id(text: str) -> Optional[str]:
    return _search(CHIJ_PLACE_ID, text)


def _data_param_id(text: str) -> Optional[str]:
    token = _search(DATA_PARAM_ID, text, 1)
    if token is None:
        return None
    # The data param embeds the hex id url-encoded
    token = token.replace('%3A', ':').replace('%3a', ':')
    return token


def _new_format_id(text: str) -> Optional[str]:
    return _search(NEW_FORMAT_ID, text, 1)


URL_STRATEGIES: List[KeyStrategy] = [
    KeyStrategy("hex_feature_id", lambda url: _hex_feature_id(url)),
    KeyStrategy("chij_place_id", lambda url: _chij_place_id(url)),
    KeyStrategy("data_param_id", lambda url: _data_param_id(url)),
    KeyStrategy("new_format_id", lambda url: _new_format_id(url)),
]


def decode_payload(payload: Union[str, bytes, Any]) -> Any:
    """
    Turn a captured response body into Python data.

    The mapping application prefixes JSON bodies with an anti-XSSI guard;
    it is stripped before parsing. Unparseable text is returned as is.
    """
    if isinstance(payload, bytes):
        payload = payload.decode('utf-8', errors='ignore')
    if not isinstance(payload, str):
        return payload

    text = payload.strip()
    if text.startswith(XSSI_PREFIX):
        text = text[len(XSSI_PREFIX):].lstrip()
    try:
        return json.loads(text)
    except ValueError:
        return text


def _walk_strings(node: Any, max_depth: int = 12) -> Iterable[str]:
    """Depth-first strings of a nested list/dict payload."""
    stack = [(node, 0)]
    while stack:
        current, depth = stack.pop()
        if isinstance(current, str):
            yield current
        elif depth < max_depth and isinstance(current, (list, tuple)):
            stack.extend((child, depth + 1) for child in reversed(current))
        elif depth < max_depth and isinstance(current, dict):
            stack.extend((child, depth + 1) for child in reversed(list(current.values())))


def _first_in_strings(data: Any, finder: Callable[[str], Optional[str]]) -> Optional[str]:
    for text in _walk_strings(data):
        found = finder(text)
        if found:
            return found
    return None


PAYLOAD_STRATEGIES: List[KeyStrategy] = [
    KeyStrategy("payload_hex_feature_id", lambda data: _first_in_strings(data, _hex_feature_id)),
    KeyStrategy("payload_chij_place_id", lambda data: _first_in_strings(data, _chij_place_id)),
    KeyStrategy("payload_data_param_id", lambda data: _first_in_strings(data, _data_param_id)),
]


class KeyExtractor:
    """Ordered list of strategies; the first non-empty answer wins."""

    def __init__(self, strategies: Sequence[KeyStrategy], prepare: Optional[Callable[[Any], Any]] = None):
        self.strategies = list(strategies)
        self.prepare = prepare

    def extract(self, source: Any) -> Optional[str]:
        if source is None:
            return None
        if self.prepare is not None:
            source = self.prepare(source)
        for strategy in self.strategies:
            key = strategy(source)
            if key:
                return key
        return None

    def explain(self, source: Any) -> Optional[str]:
        """Name of the strategy that would produce the key, for logging."""
        if source is None:
            return None
        if self.prepare is not None:
            source = self.prepare(source)
        for strategy in self.strategies:
            if strategy(source):
                return strategy.name
        return None


url_key_extractor = KeyExtractor(URL_STRATEGIES, prepare=lambda url: str(url))
payload_key_extractor = KeyExtractor(PAYLOAD_STRATEGIES, prepare=decode_payload)


def extract_key_from_url(url: Optional[str]) -> Optional[str]:
    return url_key_extractor.extract(url) if url else None


def extract_key(payload: Any) -> Optional[str]:
    """Place key carried by a captured network payload."""
    return payload_key_extractor.extract(payload)


def extract_place_slug(url: Optional[str]) -> Optional[str]:
    """Human-readable ``/place/<slug>`` segment, the last-resort identifier."""
    return _search(PLACE_SLUG, url, 1) if url else None


def classify_key(key: str) -> KeyFormat:
    if HEX_FEATURE_ID.search(key) or re.fullmatch(r'(0x)?[0-9a-fA-F]{8,}(:(0x)?[0-9a-fA-F]+)?', key):
        return KeyFormat.HEX
    if key.startswith("ChIJ"):
        return KeyFormat.CHIJ
    return KeyFormat.OPAQUE


def normalize_key(key: str) -> str:
    return (
        str(key)
        .replace('0x', '')
        .replace(':', '')
        .replace(' ', '')
        .lower()
    )


def keys_match(url_key: Optional[str], record_key: Optional[str]) -> Optional[bool]:
    """
    Compare the key derived from the dispatched URL with the record's key.

    Returns:
        None when the pair is not comparable (a side is missing, or the keys
        belong to different identifier families), otherwise whether they agree
    """
    if not url_key or not record_key:
        return None
    if classify_key(url_key) != classify_key(record_key):
        return None

    left = normalize_key(url_key)
    right = normalize_key(record_key)
    if not left or not right:
        return None
    return left == right or left in right or right in left
