"""
Data models shared by the link pipeline, the QC client and the draft workflow.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ==================== LINKS ====================

class ProcessedLink(BaseModel):
    """Result of converting one operator-supplied link."""
    original_url: Optional[str] = None
    agent_link: str = ""
    qc_link: str = ""  # QC links are not generated


# ==================== QC ====================

class QCImage(BaseModel):
    """One photo as returned by the QC provider."""
    model_config = ConfigDict(frozen=True, extra="allow")

    image_url: str
    product_name: str = ""
    qc_date: str

    @field_validator("product_name", mode="before")
    @classmethod
    def _null_name(cls, v):
        return "" if v is None else v

    @field_validator("qc_date", mode="before")
    @classmethod
    def _stringify_date(cls, v):
        # Epoch values arrive as numbers; None lands in an undated gallery
        if v is None:
            return ""
        if isinstance(v, float) and v.is_integer():
            return str(int(v))
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class QCGallery(BaseModel):
    """QC photos judged to come from the same inspection session."""
    id: str
    images: List[QCImage] = Field(default_factory=list)
    date: str
    time: str
    product_name: str = ""
    image_count: int = 0


class QCRequest(BaseModel):
    goodsUrl: Optional[str] = None


class QCSuccessResponse(BaseModel):
    status: Literal["success"] = "success"
    data: List[QCImage]
    galleries: List[QCGallery]
    normalizedUrl: str
    timestamp: str = Field(default_factory=_utc_now_iso)


class QCErrorResponse(BaseModel):
    status: Literal["error"] = "error"
    message: str
    error_code: str
    timestamp: str = Field(default_factory=_utc_now_iso)


# ==================== DRAFTS ====================

class DraftStatus(str, Enum):
    PENDING = "pending"
    SCRAPING = "scraping"
    SCRAPED = "scraped"
    ERROR = "error"


class ScrapedProduct(BaseModel):
    """Display data the Renderer pulls from an agent page."""
    title: str = ""
    price: str = ""
    images: List[str] = Field(default_factory=list)


class ScrapingResult(BaseModel):
    """What a Renderer reports for one agent link."""
    success: bool
    data: Optional[ScrapedProduct] = None
    error: Optional[str] = None
    timestamp: str = Field(default_factory=_utc_now_iso)


class ProductRecord(BaseModel):
    """Row handed to the Store: name, price, image, category, links per agent."""
    name: str
    price: float
    image: str
    category: str
    links: Dict[str, str]


class ProductDraft(BaseModel):
    """A product being curated by the operator before it is published."""
    id: str
    original_url: str
    agent_link: str = ""
    scraped: Optional[ScrapedProduct] = None
    name: str = ""
    price: float = 0.0
    image: str = ""
    category: str = ""
    brand: str = ""
    qc_images: List[str] = Field(default_factory=list)
    status: DraftStatus = DraftStatus.PENDING
    error: Optional[str] = None

    @field_validator("original_url")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("original_url cannot be empty")
        return v.strip()
