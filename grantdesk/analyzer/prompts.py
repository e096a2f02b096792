"""Prompts for the model-backed Analyzer. Every reply must be one JSON object."""

from __future__ import annotations

import json
from typing import Any

SYSTEM_PROMPT = """\
You are a Korean government-support and tax-credit consultant for small \
and medium-sized businesses. You read program announcements, company \
profiles and public data, and answer with strictly valid JSON.

## Rules
- Reply with a single JSON object and nothing else (no prose, no code fences).
- Amounts are integers in Korean won (원).
- Scores are integers from 0 to 100.
- Write free-text fields in Korean.
- When information is missing, say so in the relevant field instead of guessing.
"""


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str, indent=2)


PRESCREEN_PROMPT = """\
Screen these support programs for the company below. Reject only programs \
the company clearly cannot apply for (wrong region, startups only while the \
company is established, wrong industry or size). When unsure, pass.

## Company
{company}

## Programs
{programs}

Reply as {{"results": [{{"id": str, "pass": bool, "reason": str}}]}} with one \
entry per program id.
"""

ENRICH_PROMPT = """\
Extract structured fields from this support program announcement.

## Program
{program}

## Announcement text
{content}

Reply as {{"fields": {{"eligibilityCriteria": [str], "requiredDocuments": [str], \
"evaluationCriteria": [str], "supportDetails": [str], "selectionProcess": [str], \
"applicationMethod": str, "contactInfo": str, "keywords": [str]}}, \
"dataQualityScore": int}}.
"""

FIT_PROMPT = """\
Assess how well the company fits this support program.

## Company
{company}

## Program
{program}

Reply as {{"fitScore": int, "eligibility": "적합" | "검토 필요" | "부적합", \
"dimensions": {{"eligibilityMatch": int, "industryRelevance": int, \
"scaleFit": int, "competitiveness": int, "strategicAlignment": int}}, \
"strengths": [str], "weaknesses": [str], "advice": str, "keyActions": [str]}}.
"""

STRATEGY_PROMPT = """\
Write an application strategy document in Markdown for this program. The \
company scored {score} on fit. Cover positioning, key messages per \
evaluation criterion, a preparation timeline and risks.

## Company
{company}

## Program
{program}

## Fit analysis
{fit}

Reply as {{"markdown": str}}.
"""

REFUND_PROMPT = """\
Decide whether this previously received benefit is eligible for a refund \
or additional claim, citing the legal basis.

## Company
{company}

## Benefit
{benefit}

Reply as {{"isEligible": bool, "estimatedRefund": int, \
"riskLevel": "LOW" | "MEDIUM" | "HIGH", "legalBasis": [str], \
"requiredDocuments": [str], "advice": str}}.
"""

TAX_SCAN_PROMPT = """\
Find tax credits and refunds the company may have missed in the last five \
years (amended returns included). Use the data sources when present and \
mark each opportunity with the source its numbers come from.

## Company
{company}

## Data sources
{sources}

Reply as {{"opportunities": [{{"taxBenefitCode": str, "taxBenefitName": str, \
"estimatedRefund": int, "confidence": int, \
"difficulty": "EASY" | "MODERATE" | "COMPLEX", \
"dataSource": "NPS_API" | "DART_API" | "EI_API" | "COMPANY_PROFILE" | "ESTIMATED", \
"applicableYears": [int], "description": str, "eligibilityReason": str, \
"legalBasis": [str], "requiredDocuments": [str], "risks": [str], \
"isAmendedReturn": bool}}], "summary": str, "disclaimer": str}}.
Use the codes EMPLOYMENT_INCREASE and SOCIAL_INSURANCE for those two credits.
"""

WORKSHEET_PROMPT = """\
Build a calculation worksheet for this tax opportunity.

## Opportunity
{opportunity}

## Context
{context}

Each subtotal names the line item keys it combines; amounts are computed \
by the caller. Reply as {{"title": str, "lineItems": [{{"key": str, \
"label": str, "value": number | str, "unit": str, \
"source": "NPS_API" | "COMPANY_PROFILE" | "USER_INPUT" | "CALCULATED" | "TAX_LAW", \
"editable": bool}}], "subtotals": [{{"label": str, "keys": [str], \
"operation": "sum" | "product", "factor": number}}], "assumptions": [str]}}.
"""


def format_prompt(template: str, **values: Any) -> str:
    """Fill a prompt template, serializing non-string values as JSON."""
    return template.format(
        **{k: v if isinstance(v, (str, int)) else _dump(v) for k, v in values.items()}
    )
