#!/usr/bin/env python3
"""
Version: 1.3
Created: 2026-10-12
Updated: 2026-10-17

Link Normalizer - turn any agent, share or short link into a direct marketplace URL.

Changes in v1.3:
- Aggregator dialects moved into a rule table (AGGREGATOR_RULES)
- A rule whose host matches but yields no id returns the URL untouched;
  it never falls through to another aggregator's rule

Changes in v1.2:
- Generic fallback scans query values (decoded up to twice) and then the
  whole string for an embedded marketplace URL

Changes in v1.1:
- Kakobuy detail links are unwrapped before short-link resolution

Pipeline:
1. Unwrap the agent's own ?url= wrapper
2. Resolve short links
3. First aggregator rule whose host matches decides the result
4. Generic embedded-URL fallback
5. Otherwise return the URL as it stood after step 2
"""

import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import ParseResult, parse_qsl, unquote, urlparse

import aiohttp

from .link_classifier import (
    Platform,
    canonical_url_for,
    is_product_host,
)
from .short_link_resolver import DEFAULT_TIMEOUT, resolve_if_needed, unwrap_agent_url

logger = logging.getLogger(__name__)


# ==================== AGGREGATOR RULES ====================

TokenMatcher = Callable[[str], bool]


def _first_values(query: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        params.setdefault(key, value)
    return params


class AggregatorRule:
    """One aggregator's URL dialect, keyed on a hostname substring."""

    def __init__(self, host: str):
        self.host = host

    def matches(self, parsed: ParseResult) -> bool:
        return self.host in (parsed.hostname or "").lower()

    def extract(self, parsed: ParseResult) -> Optional[Tuple[str, Platform]]:
        """Return (product_id, platform) or None when the URL carries no id."""
        raise NotImplementedError

    def canonical_url(self, parsed: ParseResult) -> Optional[str]:
        found = self.extract(parsed)
        if not found:
            return None
        product_id, platform = found
        return canonical_url_for(platform, product_id)

    def __repr__(self):
        return f"{self.__class__.__name__}({self.host!r})"


class QueryParamRule(AggregatorRule):
    """id in ?id=, platform token in one of several query parameters."""

    def __init__(
        self,
        host: str,
        platform_params: Sequence[str],
        matchers: Sequence[Tuple[TokenMatcher, Platform]],
        normalize: Callable[[str], str] = str.upper,
    ):
        super().__init__(host)
        self.platform_params = platform_params
        self.matchers = matchers
        self.normalize = normalize

    def extract(self, parsed):
        params = _first_values(parsed.query)
        product_id = params.get("id", "")
        if not product_id:
            return None

        token = ""
        for param in self.platform_params:
            if params.get(param):
                token = params[param]
                break
        token = self.normalize(token)

        for matcher, platform in self.matchers:
            if matcher(token):
                return product_id, platform
        return None


class PathPatternRule(AggregatorRule):
    """id and platform both encoded in the path."""

    def __init__(self, host: str, patterns: Sequence[Tuple[str, Platform]]):
        super().__init__(host)
        self.patterns = [(re.compile(p), platform) for p, platform in patterns]

    def extract(self, parsed):
        for pattern, platform in self.patterns:
            match = pattern.search(parsed.path)
            if match:
                return match.group(1), platform
        return None


class EmbeddedUrlRule(AggregatorRule):
    """The product URL itself travels in a query parameter."""

    def __init__(self, host: str, param: str = "url"):
        super().__init__(host)
        self.param = param

    def extract(self, parsed):
        return None

    def canonical_url(self, parsed):
        params = _first_values(parsed.query)
        embedded = params.get(self.param)
        if not embedded:
            return None
        return unquote(embedded)


def _contains(*tokens: str) -> TokenMatcher:
    return lambda value: any(token in value for token in tokens)


def _equals(*tokens: str) -> TokenMatcher:
    return lambda value: value in tokens


PRODUCT_PATH_PATTERNS = [
    (r'/product/weidian/(\d+)', Platform.WEIDIAN),
    (r'/product/1/(\d+)', Platform.TAOBAO),
    (r'/product/0/(\d+)', Platform.ALIBABA_1688),
]

# Priority order; the first rule whose host matches owns the URL
AGGREGATOR_RULES: List[AggregatorRule] = [
    QueryParamRule(
        "cnfans.com",
        platform_params=("platform", "shop_type", "shoptype"),
        matchers=[
            (lambda v: "WEIDIAN" in v or v == "WD", Platform.WEIDIAN),
            (lambda v: "TAOBAO" in v or v == "TB", Platform.TAOBAO),
            (lambda v: "ALI_1688" in v or "1688" in v or v == "AL", Platform.ALIBABA_1688),
        ],
    ),
    PathPatternRule("hipobuy.com", PRODUCT_PATH_PATTERNS),
    QueryParamRule(
        "acbuy.com",
        platform_params=("source",),
        matchers=[
            (_equals("WD"), Platform.WEIDIAN),
            (_equals("TB"), Platform.TAOBAO),
            (_equals("AL"), Platform.ALIBABA_1688),
        ],
    ),
    PathPatternRule("cssbuy.com", [
        (r'item-micro-(\d+)', Platform.WEIDIAN),
        (r'item-1688-(\d+)', Platform.ALIBABA_1688),
        (r'item-(\d+)', Platform.TAOBAO),
    ]),
    PathPatternRule("oopbuy.com", PRODUCT_PATH_PATTERNS),
    QueryParamRule(
        "orientdig.com",
        platform_params=("shop_type",),
        matchers=[
            (_equals("weidian"), Platform.WEIDIAN),
            (_equals("taobao"), Platform.TAOBAO),
            (_equals("ali_1688"), Platform.ALIBABA_1688),
        ],
        normalize=str.lower,
    ),
    QueryParamRule(
        "mulebuy.com",
        platform_params=("platform",),
        matchers=[
            (_contains("WEIDIAN"), Platform.WEIDIAN),
            (_contains("TAOBAO"), Platform.TAOBAO),
            (_contains("ALI_1688", "1688"), Platform.ALIBABA_1688),
        ],
    ),
    EmbeddedUrlRule("allchinabuy.com"),
]


def apply_aggregator_rules(url: str) -> Tuple[bool, str]:
    """
    Map an aggregator link to its canonical product URL.

    Returns:
        (handled, url). handled is True when some rule's host matched, in which
        case url is either the canonical URL or the input unchanged.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return False, url

    for rule in AGGREGATOR_RULES:
        if not rule.matches(parsed):
            continue
        canonical = rule.canonical_url(parsed)
        if canonical:
            logger.info(f"[Normalizer] {rule.host} -> {canonical}")
            return True, canonical
        logger.info(f"[Normalizer] {rule.host} link without a usable id, leaving as is")
        return True, url

    return False, url


# ==================== GENERIC FALLBACK ====================

# Lookahead so a URL nested in another URL's path is still found
URL_IN_TEXT_PATTERN = re.compile(r'(?=(https?://[^\s<>"]+))')


def _as_product_url(candidate: str) -> Optional[str]:
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    if is_product_host(parsed.hostname.lower()):
        return parsed.geturl()
    return None


def _decode_candidates(value: str) -> List[str]:
    once = unquote(value)
    return [value, once, unquote(once)]


def extract_embedded_product_url(url: str) -> Optional[str]:
    """
    Find a marketplace URL hidden inside an unknown agent's link.

    Query values are tried raw and percent-decoded up to twice; after that
    every http(s) substring of the whole URL is tried.
    """
    try:
        query_values = [value for _, value in parse_qsl(urlparse(url).query, keep_blank_values=True)]
    except ValueError:
        query_values = []

    for value in query_values:
        for candidate in _decode_candidates(value):
            found = _as_product_url(candidate)
            if found:
                return found

    for match in URL_IN_TEXT_PATTERN.findall(url):
        found = _as_product_url(match)
        if found:
            return found

    return None


# ==================== NORMALIZER ====================

async def normalize_goods_url(
    input_url: str,
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[aiohttp.ClientSession] = None,
) -> str:
    """
    Normalize any supported input URL into a direct product URL.

    Args:
        input_url: Operator-supplied link
        timeout: Seconds per short-link request
        session: Optional shared ClientSession for short-link resolution

    Returns:
        Canonical marketplace URL, or the most processed URL reached
    """
    url = unwrap_agent_url(input_url.strip())
    url = await resolve_if_needed(url, timeout=timeout, session=session)

    handled, mapped = apply_aggregator_rules(url)
    if handled:
        return mapped

    embedded = extract_embedded_product_url(url)
    if embedded:
        logger.info(f"[Normalizer] Found embedded product URL: {embedded}")
        return embedded

    logger.info(f"[Normalizer] No rule matched, passing through: {url}")
    return url
