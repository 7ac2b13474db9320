"""
FastAPI application for bank statement reconciliation.
Serves suggestions over an in-memory ledger and applies/undoes decisions.
"""

import argparse
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import structlog

from .config import APP_BASE_PATH, Settings, get_settings
from .ledger import InMemoryLedgerStore
from .models import ManualChoice, ReconciliationOutcome, TargetType, utcnow
from .reconciliation import (
    ConflictDetector,
    PatternStore,
    ReconciliationOrchestrator,
    SuggestionBuilder,
)
from .utils.audit_logger import AuditLogger

logger = structlog.get_logger()


def setup_logging(log_dir: Optional[Path] = None, level: str = "INFO") -> None:
    """Configure logging to file and console."""
    log_dir = Path(log_dir) if log_dir else APP_BASE_PATH / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "app.log"

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )
    handlers = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_file, encoding="utf-8"),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Route structlog through standard logging
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# Request/Response models
class ManualChoiceRequest(BaseModel):
    bank_entry_ids: List[str] = Field(default_factory=list)
    target_type: TargetType
    record_ids: List[str] = Field(default_factory=list)
    loan_id: Optional[str] = None
    investor_id: Optional[str] = None
    expense_type_id: Optional[str] = None
    principal_cents: Optional[int] = None
    interest_cents: Optional[int] = None
    fees_cents: Optional[int] = None
    capital_cents: Optional[int] = None
    description: str = ""
    notes: str = ""


class ReconcileRequest(BaseModel):
    manual: Optional[ManualChoiceRequest] = None
    auto: bool = False


class BulkReconcileRequest(BaseModel):
    entry_ids: Optional[List[str]] = None
    min_confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    auto: bool = True


class OffsetRequest(BaseModel):
    bank_entry_ids: List[str] = Field(min_length=2)
    notes: str = Field(min_length=1)


class SuggestionsResponse(BaseModel):
    suggestions: List[dict]
    conflicts: Dict[str, List[str]]
    unmatched_entry_ids: List[str]
    expense_type_hints: Dict[str, dict]
    stats: Dict[str, int]


def _outcome_response(outcome: ReconciliationOutcome) -> JSONResponse:
    return JSONResponse(status_code=200 if outcome.succeeded else 409, content=outcome.to_dict())


def create_app(
    store: Optional[InMemoryLedgerStore] = None,
    pattern_store: Optional[PatternStore] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the API over a ledger store; patterns load from disk unless injected."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting Loanbook Reconciliation API")
        Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
        Path(settings.reports_dir).mkdir(parents=True, exist_ok=True)

        patterns = pattern_store if pattern_store is not None else PatternStore.load(
            settings.patterns_file, settings=settings
        )
        audit_logger = AuditLogger(settings=settings)
        app.state.settings = settings
        app.state.store = store if store is not None else InMemoryLedgerStore()
        app.state.pattern_store = patterns
        app.state.audit_logger = audit_logger
        app.state.orchestrator = ReconciliationOrchestrator(
            app.state.store,
            pattern_store=patterns,
            audit_logger=audit_logger,
            settings=settings,
        )
        yield
        patterns.save(settings.patterns_file)
        logger.info("Shutting down Loanbook Reconciliation API")

    app = FastAPI(
        title="Loanbook Reconciliation",
        description="Bank statement matching for the loan book",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def build_suggestions(request: Request):
        snapshot = await request.app.state.store.snapshot()
        builder = SuggestionBuilder(pattern_store=request.app.state.pattern_store, settings=settings)
        result = builder.build(snapshot)
        request.app.state.audit_logger.log_many(result.audit_entries)
        return snapshot, result

    def save_patterns(request: Request) -> None:
        request.app.state.pattern_store.save(settings.patterns_file)

    # API Endpoints
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": utcnow().isoformat()}

    @app.get("/api/suggestions", response_model=SuggestionsResponse)
    async def get_suggestions(request: Request):
        """Current suggestions, their conflicts and entries left unmatched."""
        _, result = await build_suggestions(request)
        conflicts = ConflictDetector().detect(result.suggestions)
        return SuggestionsResponse(
            suggestions=[s.to_dict() for s in result.ordered()],
            conflicts={k: sorted(v) for k, v in conflicts.items()},
            unmatched_entry_ids=result.unmatched_entry_ids,
            expense_type_hints={
                k: {"expense_type_id": h.expense_type_id, "confidence": round(h.confidence, 4)}
                for k, h in result.expense_type_hints.items()
            },
            stats=result.stats,
        )

    # Registered before /api/reconcile/{entry_id} so "bulk" is not taken as an id
    @app.post("/api/reconcile/bulk")
    async def reconcile_bulk(body: BulkReconcileRequest, request: Request):
        """Apply a selection of suggestions, or every confident one."""
        _, result = await build_suggestions(request)
        if body.entry_ids is None:
            entry_ids = ConflictDetector.select_confident(result.suggestions, body.min_confidence)
        else:
            missing = [i for i in body.entry_ids if i not in result.suggestions]
            if missing:
                raise HTTPException(status_code=404, detail=f"No suggestion for: {', '.join(missing)}")
            entry_ids = body.entry_ids

        items = [result.suggestions[i] for i in entry_ids]
        bulk = await request.app.state.orchestrator.apply_batch(items, auto=body.auto)
        save_patterns(request)
        return {
            "summary": bulk.summary(),
            "outcomes": [o.to_dict() for o in bulk.outcomes],
        }

    @app.post("/api/reconcile/{entry_id}")
    async def reconcile_entry(entry_id: str, request: Request, body: Optional[ReconcileRequest] = None):
        """Apply the current suggestion for an entry, or a manual choice."""
        body = body or ReconcileRequest()
        store = request.app.state.store
        if await store.get_bank_entry(entry_id) is None:
            raise HTTPException(status_code=404, detail="Bank entry not found")

        if body.manual is not None:
            data = body.manual.model_dump()
            data["bank_entry_ids"] = data["bank_entry_ids"] or [entry_id]
            if entry_id not in data["bank_entry_ids"]:
                raise HTTPException(status_code=400, detail="Manual choice must include the bank entry")
            item = ManualChoice(**data)
        else:
            _, result = await build_suggestions(request)
            item = result.suggestions.get(entry_id)
            if item is None:
                raise HTTPException(status_code=404, detail="No suggestion for this bank entry")

        outcome = await request.app.state.orchestrator.apply(item, auto=body.auto)
        save_patterns(request)
        return _outcome_response(outcome)

    @app.post("/api/offset")
    async def offset_entries(body: OffsetRequest, request: Request):
        """Reconcile a zero-net set of credits and debits against each other."""
        store = request.app.state.store
        missing = [i for i in body.bank_entry_ids if await store.get_bank_entry(i) is None]
        if missing:
            raise HTTPException(status_code=404, detail=f"Bank entries not found: {', '.join(missing)}")
        outcome = await request.app.state.orchestrator.apply_offset(body.bank_entry_ids, body.notes)
        save_patterns(request)
        return _outcome_response(outcome)

    @app.post("/api/undo/{entry_id}")
    async def undo_entry(entry_id: str, request: Request):
        """Undo the reconciliation of a bank entry."""
        if await request.app.state.store.get_bank_entry(entry_id) is None:
            raise HTTPException(status_code=404, detail="Bank entry not found")
        outcome = await request.app.state.orchestrator.undo(entry_id)
        save_patterns(request)
        return outcome.to_dict()

    @app.get("/api/audit/summary")
    async def audit_summary(request: Request):
        """Per-action counts of the audit trail."""
        return request.app.state.audit_logger.summary()

    @app.post("/api/audit/export")
    async def export_audit(request: Request):
        """Write the audit trail to the reports directory."""
        audit_logger = request.app.state.audit_logger
        path = audit_logger.export_to_file()
        return {"path": str(path), "total_entries": len(audit_logger.entries)}

    return app


app = create_app()


def run(argv: Optional[List[str]] = None) -> None:
    """Start the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    parser = argparse.ArgumentParser(description="Loanbook reconciliation API")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    args = parser.parse_args(argv)

    setup_logging(level=settings.app_log_level)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    run()
