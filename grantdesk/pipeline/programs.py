"""Program note layout: slugs, initial metadata, and crawl merges."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

from grantdesk.providers.base import CrawlResult, RawProgram
from grantdesk.utils.amounts import expected_grant

from .state import ItemStatus

PROGRAMS_PREFIX = "programs"
ANALYSIS_PREFIX = "analysis"
STRATEGIES_PREFIX = "strategies"
COMPANY_PROFILE_KEY = "company/profile"

DEFAULT_ELIGIBILITY = "검토 필요"

_SLUG_STRIP = re.compile(r"[^\w\s가-힣-]")
_CRAWLED_CONTENT_LIMIT = 15_000
_ATTACHMENT_LINK_LIMIT = 10


def now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def make_slug(program_name: str, program_id: str) -> str:
    """Readable, collision-resistant slug: sanitized name plus an id hash."""
    name = _SLUG_STRIP.sub("", program_name)
    name = re.sub(r"\s+", "-", name)
    name = re.sub(r"-+", "-", name).strip("-")[:40].strip("-")
    digest = hashlib.md5(program_id.encode("utf-8")).hexdigest()[:6]
    return f"{name}-{digest}" if name else digest


def program_key(slug: str) -> str:
    return f"{PROGRAMS_PREFIX}/{slug}"


def program_to_metadata(program: RawProgram, slug: str) -> dict[str, Any]:
    """Metadata for a freshly collected program note."""
    grant = program.expected_grant or expected_grant(
        program.support_scale, description=program.description
    )
    return {
        "type": "program",
        "id": program.id,
        "slug": slug,
        "programName": program.program_name,
        "organizer": program.organizer,
        "supportType": program.support_type,
        "supportScale": program.support_scale,
        "targetAudience": program.target_audience,
        "description": program.description,
        "officialEndDate": program.official_end_date,
        "detailUrl": program.detail_url,
        "source": program.source,
        "expectedGrant": grant,
        "regions": list(program.regions),
        "categories": list(program.categories),
        "fitScore": 0,
        "eligibility": DEFAULT_ELIGIBILITY,
        "dataQualityScore": 0,
        "enrichmentPhase": 1,
        "status": ItemStatus.SYNCED.value,
        "syncedAt": now_iso(),
        "analyzedAt": "",
    }


def program_to_content(program: RawProgram) -> str:
    lines = [f"# {program.program_name}", ""]
    if program.organizer:
        lines.append(f"- 주관기관: {program.organizer}")
    if program.support_scale:
        lines.append(f"- 지원규모: {program.support_scale}")
    if program.official_end_date:
        lines.append(f"- 마감일: {program.official_end_date}")
    if program.description:
        lines.extend(["", program.description])
    return "\n".join(lines) + "\n"


def merge_crawl(metadata: dict[str, Any], crawl: CrawlResult) -> dict[str, Any]:
    """Fill empty metadata fields from a crawled detail page.

    Existing non-empty values always win over scraped ones.
    """
    for key in ("department", "applicationMethod", "contactInfo", "targetAudience", "supportScale"):
        value = crawl.fields.get(key)
        if value and not metadata.get(key):
            metadata[key] = value

    if len(crawl.content) > len(metadata.get("description") or ""):
        metadata["crawledContent"] = crawl.content[:_CRAWLED_CONTENT_LIMIT]

    if crawl.attachment_links:
        metadata["attachmentLinks"] = [
            {"url": link.get("url", ""), "filename": link.get("filename", "")}
            for link in crawl.attachment_links[:_ATTACHMENT_LINK_LIMIT]
        ]
    return metadata


def program_summary(metadata: dict[str, Any], content: str = "") -> dict[str, Any]:
    """The subset of a program note handed to the Analyzer."""
    description = (
        metadata.get("crawledContent")
        or metadata.get("description")
        or content[:500]
    )
    return {
        "id": metadata.get("id", ""),
        "programName": metadata.get("programName", ""),
        "organizer": metadata.get("organizer", ""),
        "supportType": metadata.get("supportType", ""),
        "targetAudience": metadata.get("targetAudience", ""),
        "description": description,
        "expectedGrant": metadata.get("expectedGrant", 0),
        "officialEndDate": metadata.get("officialEndDate", ""),
        "eligibilityCriteria": metadata.get("eligibilityCriteria", []),
        "requiredDocuments": metadata.get("requiredDocuments", []),
        "regions": metadata.get("regions", []),
        "categories": metadata.get("categories", []),
    }


def fit_note_content(program_name: str, fit: Any) -> str:
    lines = [f"# 적합도 분석: {program_name}", "", f"- 점수: {fit.score}", f"- 판정: {fit.eligibility}"]
    if fit.strengths:
        lines.extend(["", "## 강점", *[f"- {s}" for s in fit.strengths]])
    if fit.weaknesses:
        lines.extend(["", "## 약점", *[f"- {w}" for w in fit.weaknesses]])
    if fit.advice:
        lines.extend(["", "## 조언", fit.advice])
    return "\n".join(lines) + "\n"
