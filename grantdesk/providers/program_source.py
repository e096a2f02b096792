"""HTTP program source -- collects public support-program listings from
the odcloud, K-Startup and MSS open APIs."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import date
from typing import Any, Callable, Optional

import httpx

from grantdesk.config.settings import Settings

from .base import ProgramSource, RawProgram

logger = logging.getLogger(__name__)


class ProgramSourceError(Exception):
    """Every configured listing API failed."""


ODCLOUD_BASE_URL = "https://api.odcloud.kr/api"
KSTARTUP_URL = (
    "https://apis.data.go.kr/B552735/kisedKstartupService01/getAnnouncementInformation01"
)
MSS_URL = "https://apis.data.go.kr/1421000/mssBizService_v2/getbizList_v2"


def normalize_date(raw: str) -> str:
    """'20260315' or '2026-03-15 ...' -> '2026-03-15'; anything else -> ''."""
    text = (raw or "").strip()
    if len(text) == 8 and text.isdigit():
        return f"{text[:4]}-{text[4:6]}-{text[6:]}"
    if len(text) >= 10 and text[4] == "-" and text[7] == "-":
        return text[:10]
    return ""


def is_active(program: RawProgram, today: date) -> bool:
    """Programs without a deadline are kept; expired or garbled ones are not."""
    if not program.official_end_date:
        return True
    try:
        return date.fromisoformat(program.official_end_date) >= today
    except ValueError:
        return False


class HttpProgramSource(ProgramSource):
    """Fetches, merges and filters listings from every configured API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        today: Callable[[], date] = date.today,
    ):
        self._settings = settings or Settings()
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._today = today

    def _fetchers(self) -> list[tuple[str, Callable[[], Any]]]:
        fetchers = []
        if self._settings.odcloud_api_key:
            fetchers.append(("odcloud", self._fetch_odcloud))
        else:
            logger.warning("ODCLOUD_API_KEY not configured")
        if self._settings.data_go_kr_api_key:
            fetchers.append(("kstartup", self._fetch_kstartup))
            fetchers.append(("mss", self._fetch_mss))
        else:
            logger.warning("DATA_GO_KR_API_KEY not configured")
        return fetchers

    async def fetch_all(self) -> list[RawProgram]:
        fetchers = self._fetchers()
        collected: list[RawProgram] = []
        failures = 0
        for name, fetch in fetchers:
            try:
                programs = await fetch()
                logger.info(f"{name}: fetched {len(programs)} programs")
                collected.extend(programs)
            except Exception as e:
                logger.error(f"{name} listing fetch failed: {e}")
                failures += 1

        if fetchers and failures == len(fetchers):
            raise ProgramSourceError("all program listing APIs failed")

        seen: set[str] = set()
        unique = []
        for program in collected:
            if program.program_name in seen:
                continue
            seen.add(program.program_name)
            unique.append(program)

        today = self._today()
        active = [p for p in unique if is_active(p, today)]
        logger.info(f"{len(active)} of {len(unique)} unique programs are still open")
        return active

    async def _fetch_odcloud(self) -> list[RawProgram]:
        resp = await self._client.get(
            f"{ODCLOUD_BASE_URL}{self._settings.odcloud_endpoint_path}",
            params={"page": 1, "perPage": 500, "serviceKey": self._settings.odcloud_api_key},
        )
        resp.raise_for_status()
        records = resp.json().get("data") or []
        programs = []
        for index, record in enumerate(records):
            name = str(record.get("지원사업명") or record.get("사업명") or "제목 없음")
            organizer = str(record.get("주관기관") or "인천광역시")
            support_type = str(record.get("지원분야") or "일반지원")
            programs.append(
                RawProgram(
                    id=f"odcloud_{record.get('번호') or index}",
                    program_name=name,
                    organizer=organizer,
                    support_type=support_type,
                    support_scale=str(record.get("지원규모") or ""),
                    description=f"{organizer}에서 진행하는 {support_type} 분야 지원사업입니다.",
                    official_end_date=normalize_date(str(record.get("마감일자") or "")),
                    detail_url=str(record.get("상세URL") or ""),
                    source="odcloud",
                )
            )
        return programs

    async def _fetch_kstartup(self) -> list[RawProgram]:
        resp = await self._client.get(
            KSTARTUP_URL,
            params={
                "serviceKey": self._settings.data_go_kr_api_key,
                "page": 1,
                "perPage": 200,
                "returnType": "json",
            },
        )
        resp.raise_for_status()
        data = resp.json().get("data") or []
        if isinstance(data, dict):
            data = data.get("data") or []
        programs = []
        for index, item in enumerate(data):
            programs.append(
                RawProgram(
                    id=str(item.get("pbanc_sn") or f"kstartup_{index}"),
                    program_name=str(
                        item.get("biz_pbanc_nm") or item.get("intg_pbanc_biz_nm") or "제목 없음"
                    ),
                    organizer=str(item.get("sprv_inst") or item.get("pbanc_ntrp_nm") or "창업진흥원"),
                    support_type=str(item.get("supt_biz_clsfc") or "창업지원"),
                    target_audience=str(item.get("aply_trgt_ctnt") or ""),
                    description=str(item.get("pbanc_ctnt") or ""),
                    official_end_date=normalize_date(str(item.get("pbanc_rcpt_end_dt") or "")),
                    detail_url=str(item.get("detl_pg_url") or item.get("biz_gdnc_url") or ""),
                    source="kstartup",
                    regions=[item["supt_regin"]] if item.get("supt_regin") else [],
                )
            )
        return programs

    async def _fetch_mss(self) -> list[RawProgram]:
        resp = await self._client.get(
            MSS_URL,
            params={
                "serviceKey": self._settings.data_go_kr_api_key,
                "numOfRows": 200,
                "pageNo": 1,
            },
            headers={"Accept": "application/xml"},
        )
        resp.raise_for_status()
        root = ET.fromstring(resp.text)
        programs = []
        for index, item in enumerate(root.iter("item")):
            def text(tag: str) -> str:
                return (item.findtext(tag) or "").strip()

            programs.append(
                RawProgram(
                    id=f"mss_{text('itemId') or index}",
                    program_name=text("title") or "제목 없음",
                    organizer="중소벤처기업부",
                    support_type="정부지원",
                    description=text("dataContents"),
                    official_end_date=normalize_date(text("applicationEndDate")),
                    detail_url=text("viewUrl"),
                    source="mss",
                )
            )
        return programs
