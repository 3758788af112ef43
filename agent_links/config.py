#!/usr/bin/env python3
"""
Version: 1.0
Created: 2026-10-12
Updated: 2026-10-12

Runtime settings for the QC provider and the affiliate rewriter.

Values come from the process environment, optionally seeded from a `.env`
file at the repository root. Nothing secret has a default.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


# ==================== CONFIGURATION ====================

DEFAULT_QC_API_URL = "https://open.kakobuy.com/open/pic/qcImage"
DEFAULT_AGENT_CODE = "KakoBuy"
DEFAULT_AFF_CODE = "latam"


class QCSettings(BaseModel):
    """Injected endpoints, credentials and timeouts."""

    qc_api_url: str = Field(default=DEFAULT_QC_API_URL, alias="QC_API_URL")
    qc_api_token: str = Field(default="", alias="QC_API_TOKEN")
    qc_proxy_url: Optional[str] = Field(default=None, alias="QC_PROXY_URL")
    request_timeout: float = Field(default=15.0, gt=0, alias="QC_REQUEST_TIMEOUT")
    resolve_timeout: float = Field(default=8.0, gt=0, alias="RESOLVE_TIMEOUT")
    qc_deadline: Optional[float] = Field(default=120.0, gt=0, alias="QC_DEADLINE")
    agent_code: str = Field(default=DEFAULT_AGENT_CODE, alias="AGENT_CODE")
    aff_code: str = Field(default=DEFAULT_AFF_CODE, alias="AFF_CODE")

    model_config = {"populate_by_name": True}

    @property
    def proxy_enabled(self) -> bool:
        return bool(self.qc_proxy_url)


def _load_dotenv():
    # Repo root .env wins; otherwise let python-dotenv search upwards.
    root_env = Path(__file__).resolve().parents[1] / ".env"
    if root_env.exists():
        load_dotenv(root_env)
    else:
        load_dotenv()


@lru_cache()
def get_settings() -> QCSettings:
    _load_dotenv()
    known = set()
    for name, field in QCSettings.model_fields.items():
        known.add(field.alias or name)
    values = {key: value for key, value in os.environ.items() if key in known and value != ""}
    try:
        return QCSettings(**values)
    except ValidationError as exc:
        invalid = [str(e["loc"][0]) for e in exc.errors()]
        detail = f"Invalid settings in environment: {', '.join(invalid)}"
        raise RuntimeError(detail) from exc
