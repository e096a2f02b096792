"""NPS provider -- workplace head count and contribution data from the
National Pension Service open API."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

import httpx

from grantdesk.config.settings import Settings

from .base import DataSourceProvider

logger = logging.getLogger(__name__)

NPS_BASE_URL = "https://apis.data.go.kr/B552015/NpsBplcInfoInqireServiceV2"


class NpsApiError(Exception):
    """The NPS API answered with a non-success result code."""


def extract_items(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Pull ``response.body.items.item`` out of a data.go.kr V2 reply."""
    header = (data.get("response") or {}).get("header") or {}
    code = header.get("resultCode")
    if code and code != "00":
        raise NpsApiError(f"{code}: {header.get('resultMsg') or 'Unknown error'}")
    items = (((data.get("response") or {}).get("body") or {}).get("items") or {}).get("item")
    if isinstance(items, list):
        return items
    if isinstance(items, dict):
        return [items]
    return []


def data_completeness(workplace: dict[str, Any]) -> int:
    score = 0
    if workplace.get("employees", 0) > 0:
        score += 30
    if workplace.get("monthlyContribution", 0) > 0:
        score += 30
    if workplace.get("dataCreatedYm"):
        score += 15
    if workplace.get("joinedAt"):
        score += 10
    return score + 15


class NpsDataSource(DataSourceProvider):
    """Looks a company up by name (and business-number prefix when known)."""

    name = "nps"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or Settings()
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def _get(self, operation: str, **params: Any) -> list[dict[str, Any]]:
        resp = await self._client.get(
            f"{NPS_BASE_URL}/{operation}",
            params={"serviceKey": self._settings.data_go_kr_api_key, "dataType": "json", **params},
        )
        resp.raise_for_status()
        return extract_items(resp.json())

    async def fetch(self, company: dict[str, Any]) -> Optional[dict[str, Any]]:
        name = str(company.get("name") or "")
        if not name or not self._settings.data_go_kr_api_key:
            return None

        basics = await self._get("getBassInfoSearchV2", wkplNm=name, pageNo=1, numOfRows=100)
        prefix = re.sub(r"[^0-9]", "", str(company.get("businessNumber") or ""))[:6]
        if prefix:
            by_number = [
                b for b in basics
                if re.sub(r"[^0-9]", "", str(b.get("bzowrRgstNo") or "")).startswith(prefix)
            ]
            basics = by_number or basics
        if not basics:
            logger.info(f"No NPS workplace found for {name}")
            return None

        active = [b for b in basics if str(b.get("wkplJnngStcd")) == "1"] or basics
        basic = active[0]
        details = await self._get("getDetailInfoSearchV2", seq=basic.get("seq"))
        detail = details[0] if details else {}

        workplace = {
            "name": basic.get("wkplNm", ""),
            "address": basic.get("wkplRoadNmDtlAddr", ""),
            "dataCreatedYm": str(basic.get("dataCrtYm") or ""),
            "employees": int(detail.get("jnngpCnt") or 0),
            "monthlyContribution": int(detail.get("crrmmNtcAmt") or 0),
            "joinedAt": str(detail.get("adptDt") or ""),
        }
        return {
            "found": True,
            "matchedByBusinessNumber": bool(prefix),
            "workplace": workplace,
            "dataCompleteness": data_completeness(workplace),
        }
