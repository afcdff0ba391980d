import asyncio
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from time import time

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel

from batchmint.config import load_config
from batchmint.constants import TokenStatus
from batchmint.endpoints import probe_endpoints
from batchmint.errors import BatchMintError
from batchmint.ledger import TokenRecord, requeue_failed, summarize
from batchmint.report import analyze
from batchmint.runtime import build_batch_run
from batchmint.scheduler import BatchRun, BatchScheduler, RunResult

log = logging.getLogger("batchmint.app")

STOP_GRACE = 60.0


class RequeueReq(BaseModel):
    token_ids: list[int] | None = None


class RunStatus(BaseModel):
    running: bool
    current_batch: int = 0
    total_batches: int = 0
    uptime_seconds: float = 0.0
    last_result: dict | None = None
    last_error: str | None = None


def _result_dict(result: RunResult) -> dict:
    return {
        "batches": result.batches,
        "attempts": result.attempts,
        "completed": result.completed,
        "failed": result.failed,
        "interrupted": result.interrupted,
        "exit_code": result.exit_code,
        "summary": result.summary,
    }


class RunController:
    """At most one scheduler at a time over a shared BatchRun."""

    def __init__(self, run: BatchRun) -> None:
        self.run = run
        self.scheduler: BatchScheduler | None = None
        self.task: asyncio.Task | None = None
        self.last_result: RunResult | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def _drive(self, scheduler: BatchScheduler) -> None:
        try:
            self.last_result = await scheduler.run()
        except BatchMintError as e:
            self.last_error = str(e)
            log.error("Run aborted: %s", e)
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            log.exception("Run crashed")

    def start(self) -> None:
        if self.running:
            raise RuntimeError("a run is already active")
        self.last_error = None
        self.scheduler = BatchScheduler(self.run, stop=asyncio.Event())
        self.task = asyncio.create_task(self._drive(self.scheduler), name="batch_scheduler")

    async def stop(self, grace: float = STOP_GRACE) -> None:
        if not self.running:
            return
        self.scheduler.request_stop()
        try:
            await asyncio.wait_for(asyncio.shield(self.task), timeout=grace)
        except TimeoutError:
            log.warning("Scheduler did not stop within %.0fs, cancelling", grace)
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)

    async def records(self) -> dict[int, TokenRecord]:
        if self.scheduler is not None and self.scheduler.records:
            return self.scheduler.records
        return await asyncio.to_thread(self.run.ledger.load)


def create_app(run_factory: Callable[[], BatchRun] | None = None, *, auto_start: bool | None = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_factory is None:
            cfg = load_config()
            run = build_batch_run(cfg)
            start_now = cfg["server"].get("auto_start", False) if auto_start is None else auto_start
        else:
            run = run_factory()
            start_now = bool(auto_start)
        app.state.controller = RunController(run)
        app.state.started_at = time()
        if start_now:
            log.info("Starting run on startup")
            app.state.controller.start()
        try:
            yield
        finally:
            log.info("Shutting down...")
            await app.state.controller.stop()
            log.info("Shutdown complete")

    app = FastAPI(
        title="Batch Mint",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "State", "description": "Ledger, signer and endpoint state"},
            {"name": "Run", "description": "Start and stop the batch run"},
        ],
    )

    r_state = APIRouter(prefix="/state", tags=["State"])
    r_run = APIRouter(prefix="/run", tags=["Run"])
    r_ledger = APIRouter(prefix="/ledger", tags=["Run"])

    def ctl(request: Request) -> RunController:
        return request.app.state.controller

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @r_state.get("/summary")
    async def state_summary(request: Request):
        return summarize(await ctl(request).records())

    @r_state.get("/signers")
    def state_signers(request: Request):
        return ctl(request).run.signers.stats()

    @r_state.get("/endpoints")
    def state_endpoints(request: Request):
        return ctl(request).run.endpoints.stats()

    @r_state.get("/tokens/{token_id}")
    async def state_token(request: Request, token_id: int):
        rec = (await ctl(request).records()).get(token_id)
        if rec is None:
            raise HTTPException(status_code=404, detail=f"token {token_id} not in ledger")
        return rec.to_dict()

    @r_state.get("/failed")
    async def state_failed(request: Request, limit: int = 100):
        records = await ctl(request).records()
        failed = sorted((r for r in records.values() if r.status == TokenStatus.FAILED), key=lambda r: r.token_id)
        return [r.to_dict() for r in failed[:limit]]

    @r_state.get("/report")
    async def state_report(request: Request, limit: int = 5):
        c = ctl(request)
        return analyze(await c.records(), c.run.token_ids, limit=limit)

    @r_run.post("/start")
    def run_start(request: Request):
        c = ctl(request)
        if c.running:
            raise HTTPException(status_code=400, detail="Run already active")
        c.start()
        return {"status": "started"}

    @r_run.post("/stop")
    async def run_stop(request: Request):
        c = ctl(request)
        if not c.running:
            raise HTTPException(status_code=400, detail="Run not active")
        await c.stop()
        return {"status": "stopped", "result": _result_dict(c.last_result) if c.last_result else None}

    @r_run.get("/status", response_model=RunStatus)
    def run_status(request: Request):
        c = ctl(request)
        s = c.scheduler
        return RunStatus(
            running=c.running,
            current_batch=s.current_batch if s else 0,
            total_batches=s.total_batches if s else 0,
            uptime_seconds=time() - s.started_at if s and s.started_at and c.running else 0.0,
            last_result=_result_dict(c.last_result) if c.last_result else None,
            last_error=c.last_error,
        )

    @r_ledger.post("/requeue")
    async def ledger_requeue(request: Request, req: RequeueReq):
        c = ctl(request)
        if c.running:
            raise HTTPException(status_code=409, detail="Stop the run before requeueing")
        records = await asyncio.to_thread(c.run.ledger.load)
        moved = requeue_failed(records, req.token_ids)
        if moved:
            await asyncio.to_thread(c.run.ledger.snapshot, records, signer_stats=c.run.signers.stats())
        c.scheduler = None
        return {"requeued": moved, "summary": summarize(records)}

    @app.post("/endpoints/probe", tags=["State"])
    async def endpoints_probe(request: Request):
        return await probe_endpoints(ctl(request).run.endpoints)

    app.include_router(r_state)
    app.include_router(r_run)
    app.include_router(r_ledger)
    return app


app = create_app()
