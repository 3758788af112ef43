#!/usr/bin/env python3
"""
Version: 1.0
Created: 2026-10-14
Updated: 2026-10-14

QC Fetcher - turn a QC lookup into MCP content (summary + paginated photo previews).

Photos are flattened gallery by gallery, so consecutive pages walk one
inspection session at a time. Each preview is preceded by a label naming its
gallery.

Default: 10 photos per call
Max: 20 photos per call
"""

import logging
from typing import Dict, List, Optional

from mcp.types import ImageContent, TextContent

from .image_utils import fetch_images_batch
from .models import ProcessedLink, QCSuccessResponse

logger = logging.getLogger(__name__)


# ==================== CONFIGURATION ====================

DEFAULT_LIMIT = 10
MAX_LIMIT = 20


# ==================== MAIN FETCHER ====================

async def render_qc_result(
    result: QCSuccessResponse,
    offset: int = 0,
    limit: int = DEFAULT_LIMIT,
    include_summary: bool = True,
) -> List[TextContent | ImageContent]:
    """
    Build MCP content for one page of QC photos.

    Args:
        result: Successful QC lookup
        offset: Index of the first photo on this page
        limit: Photos per page (clamped to MAX_LIMIT)
        include_summary: Prepend the gallery summary

    Returns:
        TextContent/ImageContent list for the tool response
    """
    limit = max(1, min(limit, MAX_LIMIT))
    offset = max(0, offset)

    photos = _collect_photos(result)
    total_count = len(photos)
    page = photos[offset:offset + limit]

    has_more = (offset + limit) < total_count
    next_offset = offset + limit if has_more else None

    content: List[TextContent | ImageContent] = []
    if include_summary:
        content.append(TextContent(type="text", text=generate_qc_summary(result)))
    content.append(TextContent(type="text", text=_generate_pagination_info(
        offset=offset,
        limit=limit,
        total_count=total_count,
        has_more=has_more,
        next_offset=next_offset,
        current_page_count=len(page),
    )))

    logger.info(f"[QC] Fetching {len(page)} previews (offset={offset}, total={total_count})")
    fetched = await fetch_images_batch([photo['url'] for photo in page])
    by_url = {url: (data, mime) for url, data, mime in fetched}

    for idx, photo in enumerate(page, offset + 1):
        content.append(TextContent(
            type="text",
            text=f"\n### Photo {idx}/{total_count}: gallery {photo['gallery_index']} ({photo['when']})\n",
        ))
        preview = by_url.get(photo['url'])
        if preview:
            content.append(ImageContent(type="image", data=preview[0], mimeType=preview[1]))
        else:
            content.append(TextContent(type="text", text=f"(preview unavailable: {photo['url']})"))

    return content


# ==================== HELPER FUNCTIONS ====================

def _collect_photos(result: QCSuccessResponse) -> List[Dict]:
    photos = []
    for gallery_index, gallery in enumerate(result.galleries, 1):
        for image in gallery.images:
            photos.append({
                'url': image.image_url,
                'gallery_index': gallery_index,
                'when': gallery.date,
            })
    return photos


def generate_qc_summary(result: QCSuccessResponse) -> str:
    """Markdown overview of the galleries in a QC lookup."""
    product_name = next((g.product_name for g in result.galleries if g.product_name), "N/A")

    md = "# QC Photos\n\n"
    md += f"**Product**: {product_name}\n"
    md += f"**Normalized URL**: {result.normalizedUrl}\n"
    md += f"**Retrieved at**: {result.timestamp}\n\n"
    md += f"## Galleries ({len(result.galleries)}) - {len(result.data)} photos\n\n"

    if result.galleries:
        md += "| # | Date | Time | Photos |\n"
        md += "|---|------|------|--------|\n"
        for idx, gallery in enumerate(result.galleries, 1):
            md += f"| {idx} | {gallery.date} | {gallery.time or '-'} | {gallery.image_count} |\n"
    md += "\n---\n\n"
    return md


def generate_links_table(rows: List[Dict]) -> str:
    """Markdown table for link conversions: input, canonical URL, agent link."""
    md = "# Converted Links\n\n"
    md += "| # | Input | Canonical URL | Agent link |\n"
    md += "|---|-------|---------------|------------|\n"
    for idx, row in enumerate(rows, 1):
        processed: ProcessedLink = row['processed']
        md += (
            f"| {idx} | {row['input']} | {row.get('canonical') or '-'} "
            f"| {processed.agent_link or 'could not convert'} |\n"
        )
    return md


def _generate_pagination_info(
    offset: int,
    limit: int,
    total_count: int,
    has_more: bool,
    next_offset: Optional[int],
    current_page_count: int,
) -> str:
    md = "## Pagination\n\n"
    md += f"- **Current page**: {current_page_count} photos (offset={offset}, limit={limit})\n"
    md += f"- **Total photos**: {total_count}\n"
    md += f"- **Has more**: {'Yes' if has_more else 'No'}\n"
    if has_more:
        md += f"- **Next page**: Use `offset={next_offset}` to fetch more photos\n"
    md += "\n"

    if current_page_count == 0:
        if total_count == 0:
            md += "No QC photos in this result.\n\n"
        elif offset >= total_count:
            md += f"Offset {offset} exceeds total photos ({total_count}).\n\n"

    md += "---\n\n"
    return md
