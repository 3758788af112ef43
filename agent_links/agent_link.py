#!/usr/bin/env python3
"""
Version: 1.2
Created: 2026-10-12
Updated: 2026-10-18

Agent Link Synthesizer - build and unpack affiliate deep links on the agent's domain.

Changes in v1.2:
- convert_link() returns the agent link and the canonical URL from a single
  short-link resolution

Changes in v1.1:
- Links that already point at the agent are unpacked and rebuilt, so a stale
  or foreign affiliate code is always replaced by ours
- process_any_link_async() resolves short links before conversion
"""

import logging
import re
from typing import Dict, Optional, Tuple
from urllib.parse import quote, unquote

import aiohttp

from .config import DEFAULT_AFF_CODE, DEFAULT_AGENT_CODE
from .link_classifier import (
    Platform,
    canonical_url_for,
    detect_platform,
    extract_id,
    is_short_link,
    is_valid_product_url,
)
from .link_normalizer import normalize_goods_url
from .models import ProcessedLink
from .short_link_resolver import DEFAULT_TIMEOUT, resolve_short_link

logger = logging.getLogger(__name__)


# ==================== CONFIGURATION ====================

AGENT_DETAIL_TEMPLATES: Dict[str, str] = {
    "KakoBuy": "https://www.kakobuy.com/item/details?url={url}&affcode={aff}",
}

AGENT_DETAIL_PATTERN = re.compile(r'https://(www\.)?kakobuy\.com/item/details\?url=([^&]+)')

AGENT_DETAIL_MARKER = "kakobuy.com/item/details"


# ==================== CONVERSION ====================

def extract_original_url(agent_link: str) -> Optional[str]:
    """Return the marketplace URL wrapped inside an agent detail link."""
    if not agent_link:
        return None

    match = AGENT_DETAIL_PATTERN.search(agent_link)
    if match:
        return unquote(match.group(2))
    return None


def convert_to_agent(original_url: str, agent_code: str, aff_code: str) -> str:
    """
    Convert a product link to an agent deep link carrying aff_code.

    Args:
        original_url: Marketplace (or id-bearing agent) URL
        agent_code: Target agent; unknown codes use the KakoBuy scheme
        aff_code: Affiliate code to embed

    Returns:
        Agent link, or '' when no id or platform could be determined
    """
    platform = detect_platform(original_url)
    product_id = extract_id(original_url)

    if not product_id or platform == Platform.UNKNOWN:
        return ""

    canonical = canonical_url_for(platform, product_id)
    template = AGENT_DETAIL_TEMPLATES.get(agent_code, AGENT_DETAIL_TEMPLATES[DEFAULT_AGENT_CODE])
    return template.format(url=quote(canonical, safe=""), aff=quote(aff_code, safe=""))


def ensure_aff_code(agent_link: str, aff_code: str) -> str:
    """Append aff_code to an agent detail link that has none."""
    if not agent_link or AGENT_DETAIL_MARKER not in agent_link:
        return agent_link
    if "affcode=" in agent_link:
        return agent_link
    # Detail links always carry ?url= already
    return f"{agent_link}&affcode={quote(aff_code, safe='')}"


def process_any_link(input_link: str, target_agent_code: str, target_aff_code: str) -> ProcessedLink:
    """
    Validate input_link and produce its agent link with our affiliate code.

    Existing agent links are unpacked first and rebuilt from the wrapped URL.
    """
    if not input_link or not is_valid_product_url(input_link):
        return ProcessedLink(original_url=None, agent_link="")

    if AGENT_DETAIL_MARKER in input_link:
        original_url = extract_original_url(input_link)
        if original_url:
            agent_link = convert_to_agent(original_url, target_agent_code, target_aff_code)
            return ProcessedLink(original_url=original_url, agent_link=agent_link)

    agent_link = convert_to_agent(input_link, target_agent_code, target_aff_code)
    return ProcessedLink(original_url=input_link, agent_link=agent_link)


async def process_any_link_async(
    input_link: str,
    target_agent_code: str = DEFAULT_AGENT_CODE,
    target_aff_code: str = DEFAULT_AFF_CODE,
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[aiohttp.ClientSession] = None,
) -> ProcessedLink:
    """process_any_link() after resolving short links."""
    link = (input_link or "").strip()
    if link and is_short_link(link):
        link = await resolve_short_link(link, timeout=timeout, session=session)
        logger.info(f"[AgentLink] Short link {input_link} -> {link}")

    return process_any_link(link, target_agent_code, target_aff_code)


async def convert_link(
    input_link: str,
    target_agent_code: str = DEFAULT_AGENT_CODE,
    target_aff_code: str = DEFAULT_AFF_CODE,
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[aiohttp.ClientSession] = None,
) -> Tuple[str, ProcessedLink]:
    """
    Agent link plus canonical marketplace URL for one input link.

    A short link is resolved once and both results are derived from that
    resolution, so the two can never disagree.

    Returns:
        (canonical_url, processed_link)
    """
    link = (input_link or "").strip()
    resolved = link
    if link and is_short_link(link):
        resolved = await resolve_short_link(link, timeout=timeout, session=session)
        logger.info(f"[AgentLink] Short link {input_link} -> {resolved}")

    processed = process_any_link(resolved, target_agent_code, target_aff_code)

    # Resolution failed; the normalizer would only retry it
    if is_short_link(resolved):
        return resolved, processed

    canonical = await normalize_goods_url(resolved, timeout=timeout, session=session)
    return canonical, processed
