"""ClaudeAnalyzer: the Analyzer backed by the Claude Agents SDK.

Each operation is one single-turn query without tools. The reply text is
parsed as JSON and mapped onto the analyzer result types.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    TextBlock,
)

from grantdesk.analyzer import prompts
from grantdesk.analyzer.base import (
    Analyzer,
    EnrichmentResult,
    FitResult,
    PrescreenVerdict,
    RefundAnalysis,
)

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class AnalyzerResponseError(ValueError):
    """The model reply was not the JSON object the prompt asked for."""


def parse_json_reply(text: str) -> dict[str, Any]:
    """Parse a model reply, tolerating code fences and surrounding prose."""
    cleaned = _FENCE.sub("", text.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise AnalyzerResponseError(f"No JSON object in reply: {text[:200]!r}") from None
        try:
            data = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as e:
            raise AnalyzerResponseError(f"Malformed JSON in reply: {e}") from e
    if not isinstance(data, dict):
        raise AnalyzerResponseError("Reply is not a JSON object")
    return data


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _strings(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)] if value else []


class ClaudeAnalyzer(Analyzer):
    def __init__(self, model: str = "", max_turns: int = 1) -> None:
        self.model = model
        self.max_turns = max_turns

    def _options(self) -> ClaudeAgentOptions:
        kwargs: dict[str, Any] = {
            "system_prompt": prompts.SYSTEM_PROMPT,
            "allowed_tools": [],
            "max_turns": self.max_turns,
        }
        if self.model:
            kwargs["model"] = self.model
        return ClaudeAgentOptions(**kwargs)

    async def _ask(self, prompt: str) -> dict[str, Any]:
        chunks: list[str] = []
        async with ClaudeSDKClient(self._options()) as client:
            await client.query(prompt)
            async for msg in client.receive_response():
                if isinstance(msg, AssistantMessage):
                    for block in msg.content:
                        if isinstance(block, TextBlock):
                            chunks.append(block.text)
        return parse_json_reply("".join(chunks))

    async def prescreen(
        self, company: dict[str, Any], programs: list[dict[str, Any]]
    ) -> list[PrescreenVerdict]:
        data = await self._ask(
            prompts.format_prompt(prompts.PRESCREEN_PROMPT, company=company, programs=programs)
        )
        verdicts = []
        for entry in data.get("results") or []:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            verdicts.append(
                PrescreenVerdict(
                    id=str(entry["id"]),
                    passed=bool(entry.get("pass", True)),
                    reason=str(entry.get("reason") or ""),
                )
            )
        logger.info(f"Prescreen returned {len(verdicts)} verdicts for {len(programs)} programs")
        return verdicts

    async def enrich(self, program: dict[str, Any], crawled_content: str) -> EnrichmentResult:
        data = await self._ask(
            prompts.format_prompt(
                prompts.ENRICH_PROMPT, program=program, content=crawled_content or "(없음)"
            )
        )
        fields = data.get("fields") or {}
        if not isinstance(fields, dict):
            raise AnalyzerResponseError("fields must be an object")
        return EnrichmentResult(
            fields=fields,
            attachments_downloaded=len(program.get("attachmentUrls") or []),
            data_quality_score=max(0, min(100, _int(data.get("dataQualityScore")))),
        )

    async def analyze_fit(self, company: dict[str, Any], program: dict[str, Any]) -> FitResult:
        data = await self._ask(
            prompts.format_prompt(prompts.FIT_PROMPT, company=company, program=program)
        )
        if "fitScore" not in data:
            raise AnalyzerResponseError("fitScore missing from fit analysis")
        dimensions = data.get("dimensions") or {}
        return FitResult(
            score=max(0, min(100, _int(data["fitScore"]))),
            eligibility=str(data.get("eligibility") or "검토 필요"),
            dimensions={str(k): _int(v) for k, v in dimensions.items()},
            strengths=_strings(data.get("strengths")),
            weaknesses=_strings(data.get("weaknesses")),
            advice=str(data.get("advice") or ""),
            key_actions=_strings(data.get("keyActions")),
        )

    async def generate_strategy(
        self, company: dict[str, Any], program: dict[str, Any], fit: FitResult
    ) -> str:
        data = await self._ask(
            prompts.format_prompt(
                prompts.STRATEGY_PROMPT,
                score=fit.score,
                company=company,
                program=program,
                fit={
                    "dimensions": fit.dimensions,
                    "strengths": fit.strengths,
                    "weaknesses": fit.weaknesses,
                    "advice": fit.advice,
                },
            )
        )
        markdown = data.get("markdown")
        if not markdown:
            raise AnalyzerResponseError("Empty strategy document")
        return str(markdown)

    async def analyze_refund_eligibility(
        self, company: dict[str, Any], benefit: dict[str, Any]
    ) -> RefundAnalysis:
        data = await self._ask(
            prompts.format_prompt(prompts.REFUND_PROMPT, company=company, benefit=benefit)
        )
        return RefundAnalysis(
            is_eligible=bool(data.get("isEligible")),
            estimated_refund=max(0, _int(data.get("estimatedRefund"))),
            risk_level=str(data.get("riskLevel") or "MEDIUM"),
            legal_basis=_strings(data.get("legalBasis")),
            required_documents=_strings(data.get("requiredDocuments")),
            advice=str(data.get("advice") or ""),
        )

    async def analyze_tax_opportunities(
        self, company: dict[str, Any], data_sources: dict[str, Optional[dict[str, Any]]]
    ) -> dict[str, Any]:
        data = await self._ask(
            prompts.format_prompt(
                prompts.TAX_SCAN_PROMPT,
                company=company,
                sources={k: v for k, v in data_sources.items() if v},
            )
        )
        if not isinstance(data.get("opportunities"), list):
            raise AnalyzerResponseError("opportunities must be a list")
        return data

    async def generate_worksheet(
        self, opportunity: dict[str, Any], context: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._ask(
            prompts.format_prompt(
                prompts.WORKSHEET_PROMPT, opportunity=opportunity, context=context
            )
        )
