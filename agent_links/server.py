#!/usr/bin/env python3
"""
Version: 1.2
Created: 2026-10-15
Updated: 2026-10-18

Agent Links MCP Server - Model Context Protocol server for link conversion and QC photos.

Changes in v1.2:
- process_product_links resolves each short link once over one shared session

Changes in v1.1:
- QC results are cached per goods URL so paging through photos does not
  hit the provider again
- Logging goes to stderr; stdout belongs to the protocol stream

Tools:
1. process_product_links - Convert marketplace/agent/short links into agent links
2. fetch_qc_images - QC galleries and photo previews for a product (paginated)
"""

import asyncio
import logging
import sys
from datetime import datetime, timedelta
from typing import List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import ImageContent, TextContent, Tool
from pydantic import BaseModel, Field, ValidationError, field_validator

from .agent_link import convert_link
from .config import get_settings
from .models import QCSuccessResponse
from .qc_client import QCRetrievalEngine, QCRetrievalError
from .qc_fetcher import DEFAULT_LIMIT, MAX_LIMIT, generate_links_table, render_qc_result
from .short_link_resolver import build_session

logger = logging.getLogger(__name__)


# ==================== CONFIGURATION ====================

# QC result cache TTL (30 minutes)
QC_CACHE_TTL_MINUTES = 30

# Links accepted per process_product_links call
MAX_LINKS_PER_CALL = 50


# ==================== QC CACHE ====================

class QCResultCache:
    """In-memory cache of successful QC lookups keyed by goods URL."""

    def __init__(self, ttl_minutes: int = QC_CACHE_TTL_MINUTES):
        self.cache = {}  # {goods_url: {'data': QCSuccessResponse, 'timestamp': datetime}}
        self.ttl = timedelta(minutes=ttl_minutes)

    def get(self, goods_url: str) -> Optional[QCSuccessResponse]:
        entry = self.cache.get(goods_url)
        if entry is None:
            logger.debug(f"[Cache] MISS for {goods_url}")
            return None
        if datetime.now() - entry['timestamp'] >= self.ttl:
            logger.debug(f"[Cache] EXPIRED for {goods_url}")
            del self.cache[goods_url]
            return None
        logger.debug(f"[Cache] HIT for {goods_url}")
        return entry['data']

    def set(self, goods_url: str, data: QCSuccessResponse):
        self.cache[goods_url] = {'data': data, 'timestamp': datetime.now()}

    def clear(self):
        self.cache.clear()


# ==================== PYDANTIC MODELS ====================

class ProcessLinksInput(BaseModel):
    links: List[str] = Field(..., min_length=1, max_length=MAX_LINKS_PER_CALL)
    agent_code: Optional[str] = None
    aff_code: Optional[str] = None

    @field_validator('links')
    @classmethod
    def strip_links(cls, v: List[str]) -> List[str]:
        links = [link.strip() for link in v if link and link.strip()]
        if not links:
            raise ValueError("links cannot be empty")
        return links


class FetchQCInput(BaseModel):
    goods_url: str = Field(..., min_length=1, max_length=2000)
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT)

    @field_validator('goods_url')
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("goods_url cannot be empty")
        return v.strip()


# ==================== MCP SERVER ====================

qc_cache = QCResultCache()

mcp_server = Server("agent-links")


@mcp_server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools for the MCP server."""
    return [
        Tool(
            name="process_product_links",
            description=(
                "Convert product links into affiliate agent links.\n\n"
                "Accepts Weidian, Taobao/Tmall and 1688 item URLs, links from buying agents "
                "(cnfans, hipobuy, acbuy, cssbuy, oopbuy, orientdig, mulebuy, allchinabuy, kakobuy) "
                "and short links (e.tb.cn, ikako.vip, allapp.link, bit.ly, ...).\n\n"
                "**Returns** a table with the canonical marketplace URL and the agent link "
                "for every input. Existing agent links are rebuilt with our affiliate code."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "links": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Links to convert (one product per entry)",
                        "minItems": 1,
                        "maxItems": MAX_LINKS_PER_CALL,
                    },
                    "agent_code": {"type": "string", "description": "Target agent (default: KakoBuy)"},
                    "aff_code": {"type": "string", "description": "Affiliate code to embed"},
                },
                "required": ["links"],
            },
        ),
        Tool(
            name="fetch_qc_images",
            description=(
                "Fetch quality-control (QC) photos for a product, grouped into inspection galleries.\n\n"
                "The link is normalized first, so agent and short links work too. "
                "Photos are paginated: keep calling with next_offset until has_more is No."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "goods_url": {"type": "string", "description": "Product, agent or short link"},
                    "offset": {"type": "integer", "default": 0, "minimum": 0},
                    "limit": {"type": "integer", "default": DEFAULT_LIMIT, "minimum": 1, "maximum": MAX_LIMIT},
                },
                "required": ["goods_url"],
            },
        ),
    ]


@mcp_server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent | ImageContent]:
    """Handle tool execution requests."""
    if name == "process_product_links":
        return await handle_process_links(arguments)
    elif name == "fetch_qc_images":
        return await handle_fetch_qc(arguments)
    else:
        raise ValueError(f"Unknown tool: {name}")


# ==================== TOOL HANDLERS ====================

async def handle_process_links(arguments: dict) -> list[TextContent]:
    try:
        input_data = ProcessLinksInput(**arguments)
    except ValidationError as e:
        return [TextContent(type="text", text=f"**Error**: {e}")]

    settings = get_settings()
    agent_code = input_data.agent_code or settings.agent_code
    aff_code = input_data.aff_code or settings.aff_code

    rows = []
    async with build_session(settings.resolve_timeout) as session:
        for link in input_data.links:
            canonical, processed = await convert_link(
                link, agent_code, aff_code, timeout=settings.resolve_timeout, session=session
            )
            rows.append({'input': link, 'canonical': canonical, 'processed': processed})

    return [TextContent(type="text", text=generate_links_table(rows))]


async def _get_or_fetch_qc(goods_url: str) -> QCSuccessResponse:
    cached = qc_cache.get(goods_url)
    if cached is not None:
        return cached

    settings = get_settings()
    engine = QCRetrievalEngine(settings)
    result = await engine.retrieve(goods_url, deadline=settings.qc_deadline)
    qc_cache.set(goods_url, result)
    return result


async def handle_fetch_qc(arguments: dict) -> list[TextContent | ImageContent]:
    try:
        input_data = FetchQCInput(**arguments)
        result = await _get_or_fetch_qc(input_data.goods_url)
        return await render_qc_result(
            result,
            offset=input_data.offset,
            limit=input_data.limit,
            include_summary=input_data.offset == 0,
        )
    except ValidationError as e:
        return [TextContent(type="text", text=f"**Error**: {e}")]
    except QCRetrievalError as e:
        return [TextContent(type="text", text=f"**Error** ({e.error_code}, HTTP {e.http_status}): {e.message}")]
    except Exception as e:
        logger.exception("[Server] fetch_qc_images failed")
        return [TextContent(type="text", text=f"**Unexpected error**: {e}")]


# ==================== MAIN ====================

async def main():
    """Main entry point for the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await mcp_server.run(
            read_stream,
            write_stream,
            mcp_server.create_initialization_options()
        )


def run():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(levelname)s %(message)s',
        stream=sys.stderr,
    )
    try:
        asyncio.run(main())
    finally:
        qc_cache.clear()


if __name__ == "__main__":
    run()
