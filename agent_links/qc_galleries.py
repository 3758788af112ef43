#!/usr/bin/env python3
"""
Version: 1.0
Created: 2026-10-13
Updated: 2026-10-13

QC Galleries - group a flat list of timestamped QC photos into inspection sessions.

Single greedy pass over the photos sorted by time. Each photo joins the first
gallery (creation order) whose anchor is within GALLERY_TOLERANCE_MINUTES and
on the same calendar date, otherwise it anchors a new gallery. Cost is
O(images x galleries), fine for the tens of photos a product usually has.
"""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from .models import QCGallery, QCImage


# ==================== CONFIGURATION ====================

GALLERY_TOLERANCE_MINUTES = 5

# Tried after ISO 8601 and epoch parsing
FALLBACK_DATE_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y %H:%M:%S",
)


# ==================== DATE PARSING ====================

def parse_qc_date(value) -> Optional[datetime]:
    """
    Parse a provider timestamp into a naive local datetime.

    Accepts ISO 8601 (with or without offset / trailing Z), epoch seconds or
    milliseconds, and a few slash-separated forms. Returns None otherwise.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    if text.isdigit():
        stamp = int(text)
        if stamp > 10 ** 11:
            stamp = stamp / 1000
        try:
            return datetime.fromtimestamp(stamp)
        except (OverflowError, OSError, ValueError):
            return None

    parsed = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in FALLBACK_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


# ==================== CLUSTERING ====================

def _new_gallery(image: QCImage, moment: datetime) -> QCGallery:
    return QCGallery(
        id=f"gallery_{int(moment.timestamp() * 1000)}",
        images=[image],
        date=image.qc_date,
        time=moment.strftime("%H:%M:%S"),
        product_name=image.product_name,
        image_count=1,
    )


def group_images_into_galleries(
    images: Iterable[QCImage],
    tolerance_minutes: float = GALLERY_TOLERANCE_MINUTES,
) -> List[QCGallery]:
    """
    Cluster QC photos into galleries by time proximity.

    Photos whose qc_date cannot be parsed each get their own gallery, placed
    after all dated galleries in input order.

    Args:
        images: Photos from the provider, any order
        tolerance_minutes: Maximum distance from a gallery's anchor

    Returns:
        Galleries in creation order
    """
    images = list(images or [])
    if not images:
        return []

    tolerance = timedelta(minutes=tolerance_minutes)

    dated: List[Tuple[datetime, QCImage]] = []
    undated: List[QCImage] = []
    for image in images:
        moment = parse_qc_date(image.qc_date)
        if moment is None:
            undated.append(image)
        else:
            dated.append((moment, image))

    # Stable: equal timestamps keep provider order
    dated.sort(key=lambda pair: pair[0])

    anchored: List[Tuple[datetime, QCGallery]] = []
    for moment, image in dated:
        for anchor, gallery in anchored:
            if abs(moment - anchor) <= tolerance and moment.date() == anchor.date():
                gallery.images.append(image)
                gallery.image_count = len(gallery.images)
                break
        else:
            anchored.append((moment, _new_gallery(image, moment)))

    galleries = [gallery for _, gallery in anchored]
    for index, image in enumerate(undated, 1):
        galleries.append(QCGallery(
            id=f"gallery_undated_{index}",
            images=[image],
            date=image.qc_date,
            time="",
            product_name=image.product_name,
            image_count=1,
        ))

    return galleries


def flatten_gallery_urls(galleries: Iterable[QCGallery], limit: Optional[int] = None) -> List[str]:
    """Image URLs of every gallery in order, optionally capped."""
    urls = [image.image_url for gallery in galleries for image in gallery.images]
    return urls[:limit] if limit is not None else urls
