#!/usr/bin/env python3
"""
Standalone Link Converter - Markdown Output
Version: 1.2
Created: 2026-10-15
Updated: 2026-10-18

Converts marketplace, agent and short links into affiliate agent links and
prints the result as a Markdown table. With --qc, also looks up the QC photo
galleries for every link and prints their summary (photos are shown as links,
not downloaded).

Changes in v1.2:
- Each short link is resolved once over one shared session

Changes in v1.1:
- --qc prints the provider's error code when a lookup fails
- Affiliate settings come from the environment / .env like the MCP server

Usage:
    python3 convert_links.py "https://weidian.com/item.html?itemID=7234567890"
    python3 convert_links.py "https://e.tb.cn/h.StvCjJlWxkNatsx?tk=Jnvaf9roBSn" --qc
    python3 convert_links.py --agent KakoBuy --aff latam "https://cnfans.com/product?id=42&platform=TAOBAO"
"""

import argparse
import asyncio
import logging
import sys
import time
from typing import List, Optional

from agent_links.agent_link import convert_link
from agent_links.config import get_settings
from agent_links.qc_client import handle_qc_request
from agent_links.qc_fetcher import generate_links_table
from agent_links.short_link_resolver import build_session

logger = logging.getLogger(__name__)


# ==================== OUTPUT ====================

def format_qc_section(link: str, status: int, body: dict) -> str:
    """Markdown block for one QC lookup, successful or not."""
    md = f"## QC: {link}\n\n"
    if status != 200:
        md += f"**Error** ({body.get('error_code')}, HTTP {status}): {body.get('message')}\n\n"
        return md

    md += f"**Normalized URL**: {body['normalizedUrl']}\n"
    md += f"**Photos**: {len(body['data'])} in {len(body['galleries'])} galleries\n\n"
    for idx, gallery in enumerate(body['galleries'], 1):
        when = f"{gallery['date']} {gallery['time']}".strip()
        md += f"### Gallery {idx} ({when}) - {gallery['image_count']} photos\n\n"
        for image in gallery['images']:
            md += f"- {image['image_url']}\n"
        md += "\n"
    return md


# ==================== MAIN ====================

async def run(links: List[str], with_qc: bool = False,
              agent_code: Optional[str] = None, aff_code: Optional[str] = None) -> str:
    """Convert every link (and optionally fetch QC); returns the Markdown report."""
    settings = get_settings()
    agent_code = agent_code or settings.agent_code
    aff_code = aff_code or settings.aff_code

    rows = []
    async with build_session(settings.resolve_timeout) as session:
        for link in links:
            canonical, processed = await convert_link(link, agent_code, aff_code,
                                                      timeout=settings.resolve_timeout,
                                                      session=session)
            rows.append({'input': link, 'canonical': canonical, 'processed': processed})

    report = generate_links_table(rows)

    if with_qc:
        report += "\n"
        for link in links:
            logger.info(f"🔍 Looking up QC photos for {link}")
            status, body = await handle_qc_request({'goodsUrl': link})
            report += format_qc_section(link, status, body)

    return report


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="agent-links",
        description="Convert product links into affiliate agent links",
    )
    parser.add_argument("links", nargs="+", help="Product, agent or short links")
    parser.add_argument("--qc", action="store_true", help="Also fetch QC photo galleries")
    parser.add_argument("--agent", dest="agent_code", help="Target agent code")
    parser.add_argument("--aff", dest="aff_code", help="Affiliate code")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(message)s', stream=sys.stderr)

    start_time = time.time()
    report = asyncio.run(run(args.links, args.qc, args.agent_code, args.aff_code))
    print(report)

    logger.info(f"⏱️  Time elapsed: {time.time() - start_time:.1f} seconds")
    return 0


if __name__ == "__main__":
    sys.exit(main())
