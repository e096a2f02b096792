"""FastAPI application for GrantDesk: pipeline runs, event streams and tax scans."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from grantdesk.analyzer import ClaudeAnalyzer
from grantdesk.config.settings import Settings
from grantdesk.pipeline import (
    PaceLimiter,
    PipelineRunner,
    RunAlreadyActive,
    RunKind,
    RunRegistry,
    RunState,
    SyncRun,
)
from grantdesk.providers import HttpCrawler, HttpProgramSource, NpsDataSource
from grantdesk.store.notes import FileNoteStore
from grantdesk.streaming import StreamManager
from grantdesk.tax import (
    InvalidOverrideError,
    InvalidTransitionError,
    OpportunityNotFoundError,
    OpportunityRegistry,
    ScanNotFoundError,
    TaxScanService,
    WorksheetError,
)
from grantdesk.tax.errors import CompanyProfileMissingError

settings = Settings()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="GrantDesk API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Singletons
stream_manager = StreamManager()
run_registry = RunRegistry()

store = FileNoteStore(settings.vault_root)
analyzer = ClaudeAnalyzer(model=settings.anthropic_model)
analyzer_pacer = PaceLimiter(settings.analyzer_interval_seconds, name="analyzer")

runner = PipelineRunner(
    store=store,
    source=HttpProgramSource(settings),
    crawler=HttpCrawler(),
    analyzer=analyzer,
    analyzer_pacer=analyzer_pacer,
    crawler_pacer=PaceLimiter(settings.crawler_interval_seconds, name="crawler"),
    strategy_fit_threshold=settings.strategy_fit_threshold,
)
tax_service = TaxScanService(
    store=store,
    analyzer=analyzer,
    providers=[NpsDataSource(settings)],
    pacer=analyzer_pacer,
)

# Background run tasks, kept referenced until they finish
_tasks: set[asyncio.Task] = set()


class RunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    force_reanalyze: bool = Field(False, alias="forceReanalyze")


class OpportunityPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Optional[str] = None
    user_overrides: Optional[dict[str, Any]] = Field(None, alias="userOverrides")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _wants_stream(request: Request) -> bool:
    return "text/event-stream" in request.headers.get("accept", "")


async def run_pipeline(run: SyncRun) -> Optional[dict[str, Any]]:
    """Execute a run and release its registry slot however it ends."""
    try:
        return await runner.execute(run, stream_manager.emitter(run.run_id))
    finally:
        run_registry.finish(run)
        if run.state is RunState.ABORTED:
            stream_manager.discard(run.run_id)


async def _start_run(kind: RunKind, body: Optional[RunRequest], request: Request):
    force = body.force_reanalyze if body is not None else False
    try:
        run = run_registry.start(kind, force_reanalyze=force)
    except RunAlreadyActive as e:
        return _error(409, str(e))

    if not _wants_stream(request):
        try:
            result = await runner.execute(run)
        finally:
            run_registry.finish(run)
        if result is None:
            return _error(500, run.error or f"{kind.value} failed")
        return result

    task = asyncio.create_task(run_pipeline(run))
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)

    generator = stream_manager.event_generator(run.run_id, on_disconnect=run.request_abort)
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/api/vault/sync")
async def sync_programs(request: Request, body: Optional[RunRequest] = None):
    """Collect, prescreen, crawl, enrich and fit-analyze support programs."""
    return await _start_run(RunKind.SYNC, body, request)


@app.post("/api/vault/analyze-all")
async def analyze_all(request: Request, body: Optional[RunRequest] = None):
    """Fit-analyze every program note."""
    return await _start_run(RunKind.ANALYZE_ALL, body, request)


@app.post("/api/vault/benefits/analyze-all")
async def analyze_all_benefits(request: Request, body: Optional[RunRequest] = None):
    """Refund-eligibility analysis for every recorded benefit."""
    return await _start_run(RunKind.BENEFIT_ANALYZE_ALL, body, request)


@app.post("/api/vault/benefits/tax-scan")
async def run_tax_scan():
    try:
        scan = await tax_service.scan()
    except CompanyProfileMissingError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.exception("Tax scan failed")
        return _error(500, f"Tax scan failed: {e}")
    return scan.model_dump(by_alias=True, mode="json")


@app.get("/api/vault/benefits/tax-scan/latest")
async def latest_tax_scan(status: str = "all", source: str = "all", sort_by: str = "refund"):
    """Most recent scan, with its opportunities filtered and sorted."""
    scan = await tax_service.latest_scan()
    if scan is None:
        return {"scan": None}
    try:
        opportunities = OpportunityRegistry(scan.opportunities).view(status, source, sort_by)
    except ValueError as e:
        return _error(400, str(e))
    data = scan.model_dump(by_alias=True, mode="json")
    data["opportunities"] = [o.model_dump(by_alias=True, mode="json") for o in opportunities]
    return {"scan": data}


@app.post("/api/vault/benefits/tax-scan/{scan_id}/opportunities/{opp_id}/worksheet")
async def generate_worksheet(scan_id: str, opp_id: str):
    try:
        worksheet = await tax_service.generate_worksheet(scan_id, opp_id)
    except (ScanNotFoundError, OpportunityNotFoundError) as e:
        return _error(404, f"Not found: {e.args[0]}")
    except InvalidTransitionError as e:
        return _error(409, str(e))
    except CompanyProfileMissingError as e:
        return _error(400, str(e))
    except Exception as e:
        logger.exception(f"Worksheet generation failed for {scan_id}/{opp_id}")
        return _error(500, f"Worksheet generation failed: {e}")
    return {"worksheet": worksheet.model_dump(by_alias=True, mode="json")}


@app.patch("/api/vault/benefits/tax-scan/{scan_id}/opportunities/{opp_id}")
async def update_opportunity(scan_id: str, opp_id: str, body: OpportunityPatch):
    try:
        opportunity = await tax_service.update_opportunity(
            scan_id, opp_id, status=body.status, overrides=body.user_overrides
        )
    except (ScanNotFoundError, OpportunityNotFoundError) as e:
        return _error(404, f"Not found: {e.args[0]}")
    except InvalidTransitionError as e:
        return _error(409, str(e))
    except (InvalidOverrideError, WorksheetError) as e:
        return _error(400, str(e))
    return {"opportunity": opportunity.model_dump(by_alias=True, mode="json")}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}


def run() -> None:
    """Serve the app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
