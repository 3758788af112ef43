#!/usr/bin/env python3
"""
Version: 1.2
Created: 2026-10-12
Updated: 2026-10-16

Link Classifier - pure string inspection of marketplace and agent links.

Changes in v1.2:
- item-micro- and item-1688- patterns now run before the generic item- pattern
- Short-link detection matches on host boundaries instead of raw substrings

Changes in v1.1:
- Added canonical_url_for() so every module builds product URLs from one table
- Added link_label() for notification captions

No network access happens here. Everything is regex and urlparse.
"""

import re
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import urlparse


# ==================== CONFIGURATION ====================

class Platform(str, Enum):
    """Source marketplace of a product."""
    WEIDIAN = "weidian"
    TAOBAO = "taobao"
    ALIBABA_1688 = "alibaba"
    UNKNOWN = "unknown"


# Ordered: the more specific item-micro-/item-1688- forms must win over item-<id>
PRODUCT_ID_PATTERNS = [
    re.compile(r'[?&]id=(\d+)'),
    re.compile(r'itemID=(\d+)'),
    re.compile(r'offer/(\d+)\.html'),
    re.compile(r'item-micro-(\d+)'),
    re.compile(r'item-1688-(\d+)'),
    re.compile(r'item-(\d+)'),
    re.compile(r'/product/\w+/(\d+)'),
    re.compile(r'/agent/\w+/(\d+)\.html'),
]

# Aggregator conventions that reveal the platform when the host does not
PLATFORM_MARKERS = [
    (Platform.WEIDIAN, ("shop_type=weidian", "platform=WEIDIAN", "source=WD",
                        "/product/weidian/", "item-micro-")),
    (Platform.TAOBAO, ("shop_type=taobao", "platform=TAOBAO", "source=TB",
                       "/product/1/", "/product/taobao/")),
    (Platform.ALIBABA_1688, ("shop_type=ali_1688", "platform=ALI_1688", "source=AL",
                             "/product/0/", "item-1688-")),
]

# Hosts that redirect somewhere else and must be resolved over HTTP
SHORT_LINK_HOSTS = (
    "ikako.vip",
    "allapp.link",
    "oopbuy.cc",
    "s.spblk.com",
    "e.tb.cn",
    "m.tb.cn",
    "s.click.taobao.com",
    "link.acbuy.com",
    "k.youshop10.com",
    "hipobuy.cn",
    "t.cn",
    "bit.ly",
    "tinyurl.com",
)

# The agent we rewrite links into; its detail pages wrap the product URL in ?url=
AGENT_HOSTS = ("kakobuy.com",)

# Marketplaces the QC provider indexes
PRODUCT_HOSTS = (
    "taobao.com",
    "tmall.com",
    "weidian.com",
    "1688.com",
    "jd.com",
    "suning.com",
    "kaola.com",
    "vip.com",
    "dangdang.com",
)

CANONICAL_URL_TEMPLATES = {
    Platform.WEIDIAN: "https://weidian.com/item.html?itemID={id}",
    Platform.TAOBAO: "https://item.taobao.com/item.htm?id={id}",
    Platform.ALIBABA_1688: "https://detail.1688.com/offer/{id}.html",
}


def _host_pattern(domain: str):
    return re.compile(r'(?:^|[/.@])' + re.escape(domain) + r'(?=[/:?#]|$)', re.IGNORECASE)


_SHORT_LINK_PATTERNS = [_host_pattern(d) for d in SHORT_LINK_HOSTS + AGENT_HOSTS]


# ==================== HOST HELPERS ====================

def get_host(url: str) -> str:
    """Lower-cased hostname of url, or '' when it cannot be parsed."""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def host_matches(host: str, domains: Iterable[str]) -> bool:
    """True if host is one of domains or a subdomain of one."""
    host = (host or "").lower()
    return any(host == d or host.endswith("." + d) for d in domains)


def is_short_link(url: str) -> bool:
    return host_matches(get_host(url), SHORT_LINK_HOSTS)


def is_agent_link(url: str) -> bool:
    return host_matches(get_host(url), AGENT_HOSTS)


def is_product_host(host: str) -> bool:
    return host_matches(host, PRODUCT_HOSTS)


# ==================== CLASSIFICATION ====================

def extract_id(url: str) -> Optional[str]:
    """
    Extract the numeric product id from a marketplace or agent URL.

    Args:
        url: Any link text

    Returns:
        Digit string of the first matching pattern, or None
    """
    if not url:
        return None

    for pattern in PRODUCT_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def detect_platform(url: str) -> Platform:
    """
    Detect the source marketplace of a link.

    Direct marketplace hosts are checked first, then agent-specific query and
    path conventions.
    """
    if not url:
        return Platform.UNKNOWN

    if "weidian.com" in url:
        return Platform.WEIDIAN
    if "taobao.com" in url or "tmall.com" in url:
        return Platform.TAOBAO
    if "1688.com" in url:
        return Platform.ALIBABA_1688

    for platform, markers in PLATFORM_MARKERS:
        if any(marker in url for marker in markers):
            return platform

    return Platform.UNKNOWN


def is_valid_product_url(url) -> bool:
    """Short links count as valid pending resolution; otherwise an id is required."""
    if not url or not isinstance(url, str):
        return False

    if any(pattern.search(url) for pattern in _SHORT_LINK_PATTERNS):
        return True

    return extract_id(url) is not None


def canonical_url_for(platform: Platform, product_id: str) -> Optional[str]:
    """Build the marketplace item URL for a platform/id pair."""
    template = CANONICAL_URL_TEMPLATES.get(platform)
    if not template or not product_id:
        return None
    return template.format(id=product_id)


def link_label(url: str) -> str:
    """Caption used for a source link in notifications."""
    if not url:
        return ""
    if "1688.com" in url:
        return "1688 Link"
    if "taobao.com" in url or "tmall.com" in url:
        return "Taobao Link"
    if "weidian.com" in url:
        return "Weidian Link"
    if "kakobuy.com" in url:
        return "Kakobuy Link"
    return "Original Link"
