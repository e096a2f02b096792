"""PipelineRunner: phase-by-phase refresh of program and benefit notes.

A run walks a fixed sequence of phases. Each phase builds its working set
from the NoteStore, skips items whose persisted status says the phase is
already done (unless the run is forced), and processes the rest one at a
time. Per-item failures are logged and counted; only a failure before the
first item fails the run.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

from grantdesk.analyzer.base import Analyzer, FitResult
from grantdesk.hooks.progress_hooks import (
    SINGLE_PHASE_WEIGHTS,
    SYNC_PHASE_WEIGHTS,
    ProgressReporter,
)
from grantdesk.providers.base import Crawler, ProgramSource
from grantdesk.store.notes import NoteStore
from grantdesk.streaming.events import SSEEvent, complete_event, error_event

from .pacing import PaceLimiter
from .programs import (
    ANALYSIS_PREFIX,
    COMPANY_PROFILE_KEY,
    PROGRAMS_PREFIX,
    STRATEGIES_PREFIX,
    fit_note_content,
    make_slug,
    merge_crawl,
    now_iso,
    program_key,
    program_summary,
    program_to_content,
    program_to_metadata,
)
from .state import (
    PHASE_REJECTED,
    ItemStatus,
    RunAborted,
    RunFailed,
    RunKind,
    SyncRun,
)

logger = logging.getLogger(__name__)

Emit = Callable[[SSEEvent], Awaitable[None]]

BENEFITS_PREFIX = "benefits"
BENEFIT_RECORD_PREFIX = "benefit-"

# Statuses ordered by how far a program note has progressed.
_STATUS_RANK = {
    ItemStatus.SYNCED.value: 0,
    ItemStatus.CRAWLED.value: 1,
    ItemStatus.ENRICHED.value: 2,
    ItemStatus.ANALYZED.value: 3,
}

RESULT_COUNTERS = (
    "totalFetched",
    "created",
    "updated",
    "cleanedDuplicates",
    "preScreenPassed",
    "preScreenRejected",
    "phase2Crawled",
    "phase3Enriched",
    "attachmentsDownloaded",
    "analyzed",
    "strategiesGenerated",
)


async def _discard(event: SSEEvent) -> None:
    return None


def _phase_of(metadata: dict[str, Any]) -> int:
    try:
        return int(metadata.get("enrichmentPhase") or 0)
    except (TypeError, ValueError):
        return 0


def _fit_score(metadata: dict[str, Any]) -> int:
    try:
        return int(metadata.get("fitScore") or 0)
    except (TypeError, ValueError):
        return 0


def _advance_status(metadata: dict[str, Any], status: ItemStatus) -> None:
    """Move a note forward; never back past a later status."""
    current = _STATUS_RANK.get(metadata.get("status") or "", -1)
    if _STATUS_RANK[status.value] >= current:
        metadata["status"] = status.value


class PipelineRunner:
    """Executes one SyncRun against the collaborators.

    Every Analyzer call goes through ``analyzer_pacer`` and every crawl
    through ``crawler_pacer``; both default to real-time pacers with the
    given intervals.
    """

    def __init__(
        self,
        store: NoteStore,
        source: ProgramSource,
        crawler: Crawler,
        analyzer: Analyzer,
        analyzer_pacer: Optional[PaceLimiter] = None,
        crawler_pacer: Optional[PaceLimiter] = None,
        strategy_fit_threshold: int = 60,
        analyzer_interval: float = 2.0,
        crawler_interval: float = 1.0,
    ) -> None:
        self.store = store
        self.source = source
        self.crawler = crawler
        self.analyzer = analyzer
        self.analyzer_pacer = analyzer_pacer or PaceLimiter(analyzer_interval, name="analyzer")
        self.crawler_pacer = crawler_pacer or PaceLimiter(crawler_interval, name="crawler")
        self.strategy_fit_threshold = strategy_fit_threshold

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self, run: SyncRun, emit: Emit = _discard) -> Optional[dict[str, Any]]:
        """Run to a terminal state and return the complete payload.

        Returns None when the run failed or was aborted; ``run.state`` and
        ``run.error`` say which. Exactly one terminal frame is emitted for
        completed and failed runs, none for aborted ones.
        """
        weights = SINGLE_PHASE_WEIGHTS if run.kind is not RunKind.SYNC else SYNC_PHASE_WEIGHTS
        reporter = ProgressReporter(emit, weights)
        run.enter_phase(1 if run.kind is RunKind.SYNC else 0)
        logger.info("Run %s (%s) started", run.run_id, run.kind.value)

        try:
            if run.kind is RunKind.SYNC:
                await self._run_sync(run, reporter)
            elif run.kind is RunKind.ANALYZE_ALL:
                await self._run_analyze_all(run, reporter)
            else:
                await self._run_benefit_analysis(run, reporter)
        except RunAborted:
            run.abort()
            logger.info("Run %s aborted in phase %d", run.run_id, run.phase)
            return None
        except RunFailed as e:
            return await self._fail(run, emit, str(e))
        except Exception as e:
            logger.exception("Run %s crashed in phase %d", run.run_id, run.phase)
            return await self._fail(run, emit, str(e))

        run.complete()
        result = self._result(run)
        logger.info(
            "Run %s completed: processed=%s skipped=%s errors=%s",
            run.run_id,
            result["processed"],
            result["skipped"],
            result["errors"],
        )
        await emit(complete_event(result))
        return result

    async def _fail(self, run: SyncRun, emit: Emit, message: str) -> None:
        run.fail(message)
        logger.error("Run %s failed: %s", run.run_id, message)
        await emit(error_event(f"{run.kind.value} failed: {message}"))
        return None

    def _result(self, run: SyncRun) -> dict[str, Any]:
        final_phase = 5 if run.kind is RunKind.SYNC else 0
        final = run.counters(final_phase)
        result: dict[str, Any] = {"success": True, "kind": run.kind.value}
        for key in RESULT_COUNTERS:
            result[key] = run.stats.get(key, 0)
        result.update(
            processed=final.processed,
            skipped=final.skipped,
            errors=final.errors,
            perPhaseCounts=run.per_phase_counts(),
            startedAt=run.started_at.isoformat(),
            completedAt=run.completed_at.isoformat() if run.completed_at else None,
        )
        return result

    @staticmethod
    def _check_abort(run: SyncRun) -> None:
        if run.abort_requested:
            raise RunAborted(run.run_id)

    async def _prepare(self) -> dict[str, Any]:
        """Infrastructure checks shared by every run kind; returns the company."""
        try:
            await self.store.ensure_ready()
            if await self.store.exists(COMPANY_PROFILE_KEY):
                company, _ = await self.store.read(COMPANY_PROFILE_KEY)
                return company
        except Exception as e:
            raise RunFailed(str(e)) from e
        return {}

    async def _program_notes(self) -> list[tuple[str, dict[str, Any], str]]:
        notes = []
        for key in await self.store.list_keys(PROGRAMS_PREFIX):
            try:
                metadata, content = await self.store.read(key)
            except Exception as e:
                logger.warning("Skipping unreadable note %s: %s", key, e)
                continue
            notes.append((key, metadata, content))
        return notes

    async def _phase_notes(self, run: SyncRun, phase: int) -> list[tuple[str, dict[str, Any], str]]:
        """Program notes for a sync phase after collection.

        Items have already been written by then, so a listing failure counts
        as one error for the phase instead of failing the run.
        """
        try:
            return await self._program_notes()
        except Exception as e:
            logger.warning("Could not list program notes for phase %d: %s", phase, e)
            run.counters(phase).errors += 1
            return []

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def _run_sync(self, run: SyncRun, reporter: ProgressReporter) -> None:
        company = await self._prepare()
        try:
            programs = await self.source.fetch_all()
        except Exception as e:
            raise RunFailed(str(e)) from e

        await self._collect(run, reporter, programs)
        await self._cleanup_duplicates(run)

        self._check_abort(run)
        run.enter_phase(2)
        if company.get("name") and company.get("industry"):
            await self._prescreen(run, reporter, company)
        else:
            logger.info("No company name/industry on file; skipping prescreen")

        self._check_abort(run)
        run.enter_phase(3)
        await self._crawl(run, reporter)

        self._check_abort(run)
        run.enter_phase(4)
        await self._enrich(run, reporter)

        self._check_abort(run)
        run.enter_phase(5)
        targets = []
        counters = run.counters(5)
        for key, metadata, content in await self._phase_notes(run, 5):
            if _phase_of(metadata) == PHASE_REJECTED:
                continue
            done = _fit_score(metadata) > 0 or metadata.get("status") == ItemStatus.ANALYZED.value
            if done and not run.force_reanalyze:
                counters.skipped += 1
                continue
            targets.append((key, metadata, content))
        await self._analyze_programs(run, reporter, 5, targets, company)

    async def _collect(self, run: SyncRun, reporter: ProgressReporter, programs: list) -> None:
        counters = run.counters(1)
        total = len(programs)
        run.bump("totalFetched", total)
        if total:
            await reporter.phase_started(1, "collect", total)

        for i, program in enumerate(programs, start=1):
            self._check_abort(run)
            try:
                slug = make_slug(program.program_name, program.id)
                key = program_key(slug)
                if await self.store.exists(key):
                    metadata, content = await self.store.read(key)
                    metadata["syncedAt"] = now_iso()
                    await self.store.write(key, metadata, content)
                    counters.updated += 1
                    run.bump("updated")
                else:
                    await self.store.write(
                        key,
                        program_to_metadata(program, slug),
                        program_to_content(program),
                    )
                    counters.created += 1
                    run.bump("created")
                counters.processed += 1
            except Exception as e:
                logger.warning("Collect failed for %s: %s", program.program_name, e)
                counters.errors += 1
            await reporter.item_done(1, "collect", i, total, program.program_name)

    async def _cleanup_duplicates(self, run: SyncRun) -> None:
        """Keep one note per program name: best data quality, then newest."""
        by_name: dict[str, list[tuple[str, dict[str, Any]]]] = defaultdict(list)
        for key, metadata, _ in await self._phase_notes(run, 1):
            name = metadata.get("programName") or ""
            if name:
                by_name[name].append((key, metadata))

        for entries in by_name.values():
            if len(entries) < 2:
                continue
            entries.sort(
                key=lambda e: (
                    int(e[1].get("dataQualityScore") or 0),
                    str(e[1].get("syncedAt") or ""),
                ),
                reverse=True,
            )
            for key, _ in entries[1:]:
                try:
                    await self.store.delete(key)
                    run.bump("cleanedDuplicates")
                except Exception as e:
                    logger.warning("Could not remove duplicate %s: %s", key, e)
                    run.counters(1).errors += 1

        if run.stats.get("cleanedDuplicates"):
            logger.info("Removed %d duplicate program notes", run.stats["cleanedDuplicates"])

    async def _prescreen(
        self, run: SyncRun, reporter: ProgressReporter, company: dict[str, Any]
    ) -> None:
        counters = run.counters(2)
        targets = []
        for key, metadata, content in await self._phase_notes(run, 2):
            if _phase_of(metadata) != 1:
                continue
            if metadata.get("prescreenedAt") and not run.force_reanalyze:
                counters.skipped += 1
                continue
            targets.append((key, metadata, content))
        if not targets:
            return

        total = len(targets)
        self._check_abort(run)
        await reporter.phase_started(2, "prescreen", total)

        verdicts = None
        try:
            results = await self.analyzer_pacer.call(
                self.analyzer.prescreen,
                company,
                [program_summary(m, c) for _, m, c in targets],
            )
            verdicts = {v.id: v for v in results}
        except Exception as e:
            logger.warning("Prescreen batch failed; letting %d programs through: %s", total, e)
            counters.errors += 1

        for i, (key, metadata, content) in enumerate(targets, start=1):
            self._check_abort(run)
            name = metadata.get("programName", "")
            if verdicts is None:
                run.bump("preScreenPassed")
            else:
                try:
                    verdict = verdicts.get(metadata.get("id", ""))
                    metadata["prescreenedAt"] = now_iso()
                    rejected = verdict is not None and not verdict.passed
                    if rejected:
                        metadata.update(
                            fitScore=3,
                            eligibility="부적합",
                            enrichmentPhase=PHASE_REJECTED,
                            preScreenReason=verdict.reason,
                            status=ItemStatus.PRESCREEN_REJECTED.value,
                        )
                    await self.store.write(key, metadata, content)
                    run.bump("preScreenRejected" if rejected else "preScreenPassed")
                    counters.processed += 1
                except Exception as e:
                    logger.warning("Prescreen write failed for %s: %s", name, e)
                    counters.errors += 1
            await reporter.item_done(2, "prescreen", i, total, name)

        logger.info(
            "Prescreen: %d passed, %d rejected",
            run.stats.get("preScreenPassed", 0),
            run.stats.get("preScreenRejected", 0),
        )

    async def _crawl(self, run: SyncRun, reporter: ProgressReporter) -> None:
        counters = run.counters(3)
        targets = []
        for key, metadata, content in await self._phase_notes(run, 3):
            phase = _phase_of(metadata)
            if not metadata.get("detailUrl") or phase == PHASE_REJECTED:
                continue
            done = phase >= 2 or metadata.get("status") == ItemStatus.ENRICHED.value
            if done and not run.force_reanalyze:
                counters.skipped += 1
                continue
            targets.append((key, metadata, content))
        if not targets:
            return

        total = len(targets)
        await reporter.phase_started(3, "crawl", total)
        for i, (key, metadata, content) in enumerate(targets, start=1):
            self._check_abort(run)
            name = metadata.get("programName", "")
            try:
                crawled = await self.crawler_pacer.call(
                    self.crawler.crawl, metadata["detailUrl"], name
                )
                if crawled is not None:
                    merge_crawl(metadata, crawled)
                    run.bump("phase2Crawled")
                metadata["enrichmentPhase"] = max(_phase_of(metadata), 2)
                _advance_status(metadata, ItemStatus.CRAWLED)
                await self.store.write(key, metadata, content)
                counters.processed += 1
            except Exception as e:
                logger.warning("Crawl failed for %s: %s", name, e)
                counters.errors += 1
            await reporter.item_done(3, "crawl", i, total, name)

    async def _enrich(self, run: SyncRun, reporter: ProgressReporter) -> None:
        counters = run.counters(4)
        targets = []
        for key, metadata, content in await self._phase_notes(run, 4):
            phase = _phase_of(metadata)
            if phase < 2 or phase == PHASE_REJECTED:
                continue
            done = phase >= 3 or metadata.get("status") in (
                ItemStatus.ENRICHED.value,
                ItemStatus.ANALYZED.value,
            )
            if done and not run.force_reanalyze:
                counters.skipped += 1
                continue
            targets.append((key, metadata, content))
        if not targets:
            return

        total = len(targets)
        await reporter.phase_started(4, "enrich", total)
        for i, (key, metadata, content) in enumerate(targets, start=1):
            self._check_abort(run)
            name = metadata.get("programName", "")
            try:
                enrichment = await self.analyzer_pacer.call(
                    self.analyzer.enrich,
                    program_summary(metadata, content),
                    metadata.get("crawledContent") or metadata.get("description") or "",
                )
                metadata.update(enrichment.fields)
                metadata["dataQualityScore"] = enrichment.data_quality_score
                metadata["enrichedAt"] = now_iso()
                metadata["enrichmentPhase"] = 3
                _advance_status(metadata, ItemStatus.ENRICHED)
                await self.store.write(key, metadata, content)
                run.bump("phase3Enriched")
                run.bump("attachmentsDownloaded", enrichment.attachments_downloaded)
                counters.processed += 1
            except Exception as e:
                logger.warning("AI enrichment failed for %s: %s", name, e)
                counters.errors += 1
            await reporter.item_done(4, "enrich", i, total, name)

    # ------------------------------------------------------------------
    # Fit analysis (sync phase 5 and analyze-all)
    # ------------------------------------------------------------------

    async def _run_analyze_all(self, run: SyncRun, reporter: ProgressReporter) -> None:
        company = await self._prepare()
        counters = run.counters(0)
        targets = []
        for key, metadata, content in await self._program_notes():
            if not metadata.get("slug"):
                continue
            if metadata.get("status") == ItemStatus.ANALYZED.value and not run.force_reanalyze:
                counters.skipped += 1
                continue
            targets.append((key, metadata, content))
        await self._analyze_programs(run, reporter, 0, targets, company)

    async def _analyze_programs(
        self,
        run: SyncRun,
        reporter: ProgressReporter,
        phase: int,
        targets: list[tuple[str, dict[str, Any], str]],
        company: dict[str, Any],
    ) -> None:
        if not targets:
            return
        counters = run.counters(phase)
        total = len(targets)
        await reporter.phase_started(phase, "fit", total)

        for i, (key, metadata, content) in enumerate(targets, start=1):
            self._check_abort(run)
            name = metadata.get("programName", "")
            slug = metadata.get("slug") or key.split("/", 1)[1]
            try:
                summary = program_summary(metadata, content)
                fit = await self.analyzer_pacer.call(self.analyzer.analyze_fit, company, summary)
                await self.store.write(
                    f"{ANALYSIS_PREFIX}/{slug}-fit",
                    {
                        "slug": slug,
                        "programName": name,
                        "fitScore": fit.score,
                        "eligibility": fit.eligibility,
                        "dimensions": fit.dimensions,
                        "analyzedAt": now_iso(),
                    },
                    fit_note_content(name, fit),
                )
                metadata.update(
                    fitScore=fit.score,
                    eligibility=fit.eligibility,
                    dimensions=fit.dimensions,
                    keyActions=fit.key_actions,
                    analyzedAt=now_iso(),
                )
                _advance_status(metadata, ItemStatus.ANALYZED)
                await self.store.write(key, metadata, content)
                run.bump("analyzed")
                counters.processed += 1
                if fit.score >= self.strategy_fit_threshold:
                    await self._write_strategy(run, company, summary, fit, slug)
            except Exception as e:
                logger.warning("Fit analysis failed for %s: %s", name, e)
                counters.errors += 1
            await reporter.item_done(phase, "fit", i, total, name)

    async def _write_strategy(
        self,
        run: SyncRun,
        company: dict[str, Any],
        summary: dict[str, Any],
        fit: FitResult,
        slug: str,
    ) -> None:
        try:
            document = await self.analyzer_pacer.call(
                self.analyzer.generate_strategy, company, summary, fit
            )
            await self.store.write(
                f"{STRATEGIES_PREFIX}/{slug}",
                {
                    "type": "strategy",
                    "slug": slug,
                    "programName": summary.get("programName", ""),
                    "fitScore": fit.score,
                    "dimensions": fit.dimensions,
                    "generatedAt": now_iso(),
                },
                document,
            )
            run.bump("strategiesGenerated")
        except Exception as e:
            logger.warning("Strategy generation failed for %s: %s", slug, e)

    # ------------------------------------------------------------------
    # Benefit refund analysis
    # ------------------------------------------------------------------

    async def _run_benefit_analysis(self, run: SyncRun, reporter: ProgressReporter) -> None:
        company = await self._prepare()
        counters = run.counters(0)
        targets = []
        for key in await self.store.list_keys(BENEFITS_PREFIX):
            if not key.split("/", 1)[1].startswith(BENEFIT_RECORD_PREFIX):
                continue
            try:
                metadata, content = await self.store.read(key)
            except Exception as e:
                logger.warning("Skipping unreadable benefit %s: %s", key, e)
                continue
            if metadata.get("type") != "benefit":
                continue
            if metadata.get("analyzedAt") and not run.force_reanalyze:
                counters.skipped += 1
                continue
            targets.append((key, metadata, content))
        if not targets:
            return

        total = len(targets)
        await reporter.phase_started(0, "benefit", total)
        for i, (key, metadata, content) in enumerate(targets, start=1):
            self._check_abort(run)
            benefit_id = metadata.get("id") or key.split("/", 1)[1][len(BENEFIT_RECORD_PREFIX):]
            name = metadata.get("programName", "")
            try:
                analysis = await self.analyzer_pacer.call(
                    self.analyzer.analyze_refund_eligibility, company, metadata
                )
                analyzed_at = now_iso()
                await self.store.write(
                    f"{BENEFITS_PREFIX}/analysis-{benefit_id}",
                    {
                        "type": "benefit-analysis",
                        "benefitId": benefit_id,
                        "analyzedAt": analyzed_at,
                        "isEligible": analysis.is_eligible,
                        "estimatedRefund": analysis.estimated_refund,
                        "riskLevel": analysis.risk_level,
                        "legalBasis": analysis.legal_basis,
                        "requiredDocuments": analysis.required_documents,
                        "advice": analysis.advice,
                    },
                    f"# AI 환급 분석 결과\n\n{analysis.advice}\n",
                )
                metadata["analyzedAt"] = analyzed_at
                if analysis.is_eligible:
                    metadata["status"] = ItemStatus.REFUND_ELIGIBLE.value
                await self.store.write(key, metadata, content)
                run.bump("analyzed")
                counters.processed += 1
            except Exception as e:
                logger.warning("Refund analysis failed for %s: %s", benefit_id, e)
                counters.errors += 1
            await reporter.item_done(0, "benefit", i, total, name)
