#!/usr/bin/env python3
"""
Version: 1.0
Created: 2026-10-15
Updated: 2026-10-15

Product Drafts - the operator workflow around the link and QC core.

A draft is created per pasted link, converted to an agent link, filled in by
the Renderer, enriched with QC photo candidates, curated (category, chosen
photo) and finally published to the Store, with a Notifier announcement.

Renderer, Store and Notifier are external systems; only their contracts live
here.

Library API only: neither the MCP server nor the CLI exposes this workflow.
Callers embed it and supply their own Renderer, Store and Notifier.
"""

import logging
import re
import time
from typing import Iterable, List, Optional, Protocol

import aiohttp

from .agent_link import ensure_aff_code, process_any_link_async
from .config import DEFAULT_AFF_CODE, DEFAULT_AGENT_CODE
from .link_classifier import is_valid_product_url, link_label
from .models import DraftStatus, ProductDraft, ProductRecord, ScrapingResult
from .qc_client import QCRetrievalEngine, QCRetrievalError
from .qc_galleries import flatten_gallery_urls

logger = logging.getLogger(__name__)


# ==================== CONFIGURATION ====================

CATEGORIES = [
    "Hoodies", "Jackets", "Shorts", "Shoes", "Accessories",
    "T-shirt", "Pants", "Girls", "Tracksuits",
]

# QC candidates kept per draft
MAX_QC_IMAGES = 10

# Announcement price conversion
CNY_TO_USD = 0.15


# ==================== COLLABORATORS ====================

class Renderer(Protocol):
    async def render(self, agent_link: str) -> ScrapingResult:
        """Scrape title, price text and images from an agent page."""


class Store(Protocol):
    async def insert_product(self, record: ProductRecord) -> str:
        """Persist a product and return its id; raise on failure."""


class Notifier(Protocol):
    async def notify(self, record: ProductRecord, original_url: Optional[str] = None) -> bool:
        """Announce a published product; False when it could not be sent."""


# ==================== HELPERS ====================

def parse_price(text: str) -> float:
    """Price text like '¥ 128,50' -> 128.5; 0.0 when no number is present."""
    if not text:
        return 0.0
    cleaned = re.sub(r'[^\d.,]', '', text).replace(',', '.', 1)
    match = re.match(r'\d*\.?\d+', cleaned)
    if not match:
        return 0.0
    try:
        return float(match.group(0))
    except ValueError:
        return 0.0


def format_announcement(record: ProductRecord, original_url: Optional[str] = None) -> str:
    """Markdown caption a Notifier can post for a published product."""
    usd_price = record.price * CNY_TO_USD
    lines = [
        f"🔥 {record.name}",
        f"💰 CNY ￥{record.price:.2f} ≈ ${usd_price:.2f}",
    ]
    for agent_code, link in record.links.items():
        lines.append(f"🛒 [{agent_code} Link]({link})")
    if original_url:
        lines.append("")
        lines.append(f"🔗 [{link_label(original_url)}]({original_url})")
    return "\n".join(lines)


def create_draft(original_url: str, index: int = 0) -> ProductDraft:
    return ProductDraft(
        id=f"product-{int(time.time() * 1000)}-{index}",
        original_url=original_url,
    )


def create_drafts(raw_text: str) -> List[ProductDraft]:
    """One pending draft per non-empty line of pasted text."""
    lines = [line.strip() for line in (raw_text or "").splitlines()]
    return [create_draft(line, i) for i, line in enumerate(line for line in lines if line)]


# ==================== PIPELINE ====================

async def resolve_agent_link(
    original_url: str,
    agent_code: str = DEFAULT_AGENT_CODE,
    aff_code: str = DEFAULT_AFF_CODE,
    session: Optional[aiohttp.ClientSession] = None,
) -> str:
    """Agent link for original_url, or original_url itself when it cannot be converted."""
    if not is_valid_product_url(original_url):
        return original_url

    processed = await process_any_link_async(original_url, agent_code, aff_code, session=session)
    if processed.agent_link:
        return ensure_aff_code(processed.agent_link, aff_code)
    return original_url


async def prepare_draft(
    draft: ProductDraft,
    renderer: Renderer,
    qc_engine: Optional[QCRetrievalEngine] = None,
    agent_code: str = DEFAULT_AGENT_CODE,
    aff_code: str = DEFAULT_AFF_CODE,
    qc_deadline: Optional[float] = None,
) -> ProductDraft:
    """
    Run one draft through conversion, rendering and QC lookup.

    The draft is updated in place and returned. Renderer failures move it to
    ERROR; a failed QC lookup only leaves qc_images empty.
    """
    draft.status = DraftStatus.SCRAPING
    draft.error = None

    draft.agent_link = await resolve_agent_link(draft.original_url, agent_code, aff_code)
    logger.info(f"[Drafts] {draft.id}: agent link {draft.agent_link}")

    try:
        result = await renderer.render(draft.agent_link)
    except Exception as e:
        logger.error(f"[Drafts] {draft.id}: renderer raised: {e}")
        draft.status = DraftStatus.ERROR
        draft.error = str(e)
        return draft

    if not result.success or result.data is None:
        logger.error(f"[Drafts] {draft.id}: could not scrape {draft.agent_link}: {result.error}")
        draft.status = DraftStatus.ERROR
        draft.error = result.error or "Unknown error"
        return draft

    draft.scraped = result.data
    draft.name = result.data.title or ""
    draft.price = parse_price(result.data.price)
    draft.image = result.data.images[0] if result.data.images else ""
    draft.status = DraftStatus.SCRAPED

    if qc_engine is not None:
        try:
            qc = await qc_engine.retrieve(draft.original_url, deadline=qc_deadline)
            draft.qc_images = flatten_gallery_urls(qc.galleries, limit=MAX_QC_IMAGES)
        except QCRetrievalError as e:
            logger.warning(f"[Drafts] {draft.id}: no QC photos ({e.error_code}: {e.message})")
            draft.qc_images = []

    return draft


def select_qc_image(draft: ProductDraft, image_url: str) -> ProductDraft:
    """Use one of the QC candidates as the product photo."""
    draft.image = image_url
    return draft


def is_publishable(draft: ProductDraft) -> bool:
    return (
        draft.status == DraftStatus.SCRAPED
        and bool(draft.name)
        and draft.price > 0
        and bool(draft.image)
        and bool(draft.category)
    )


def to_record(draft: ProductDraft, agent_code: str = DEFAULT_AGENT_CODE) -> ProductRecord:
    return ProductRecord(
        name=draft.name,
        price=draft.price,
        image=draft.image,
        category=draft.category,
        links={agent_code: draft.agent_link},
    )


async def publish_drafts(
    drafts: Iterable[ProductDraft],
    store: Store,
    notifier: Optional[Notifier] = None,
    agent_code: str = DEFAULT_AGENT_CODE,
) -> List[str]:
    """
    Persist every publishable draft and announce it.

    Store errors propagate and stop the batch. Notifier errors are logged and
    never affect persistence.

    Returns:
        Store ids of the published products, in order
    """
    published = []
    for draft in drafts:
        if not is_publishable(draft):
            logger.info(f"[Drafts] Skipping incomplete draft {draft.id}")
            continue

        record = to_record(draft, agent_code)
        product_id = await store.insert_product(record)
        published.append(product_id)
        logger.info(f"[Drafts] Saved {draft.id} as {product_id}")

        if notifier is None:
            continue
        try:
            sent = await notifier.notify(record, draft.original_url)
            if not sent:
                logger.warning(f"[Drafts] Notifier declined {product_id}")
        except Exception as e:
            logger.warning(f"[Drafts] Notifier failed for {product_id}: {e}")

    return published
