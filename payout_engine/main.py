"""FastAPI admin API for the distribution and payout engine.

Run with: uv run uvicorn payout_engine.main:app --reload
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager

import logfire
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.requests import Request

from .database import get_db, init_db
from .distributions import DistributionService
from .errors import (
    CsvImportError,
    DistributionEngineError,
    NotFoundError,
    PayoutValidationError,
    PreconditionError,
)
from .payouts import PayoutService
from .reconciliation import fix_underwriter_payouts
from .schemas import (
    ActionResponse,
    ApprovalRequest,
    BatchResult,
    BulkPayoutUpdate,
    CreateDraftRequest,
    CsvImportRequest,
    CsvImportResult,
    DeleteDistributionRequest,
    DistributionSummary,
    DraftDistributionResult,
    FixUnderwriterRequest,
    MonthlyPayoutGroup,
    PayoutIdsRequest,
    PayoutSummary,
    PayoutUpdate,
    PayoutUpdateRequest,
    PropertyPayoutGroup,
    RecalculateRequest,
    ReconciliationResult,
    ValidationReport,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="Payout Engine API",
    description="Distribution and payout allocation for fractional property shares",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for the admin dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure Logfire for observability (after app creation)
if os.getenv("LOGFIRE_TOKEN"):
    logfire.configure()
    logfire.instrument_fastapi(app)

distributions = DistributionService()
payouts = PayoutService()


# =============================================================================
# Auth and error mapping
# =============================================================================

# Simple bearer token auth for admin endpoints
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "dev-admin-token")
security = HTTPBearer(auto_error=False)


async def verify_admin(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify admin bearer token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Admin token required")
    if credentials.credentials != ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid admin token")
    return True


def actor(x_actor_id: str = Header(default="admin")) -> str:
    """Id of the admin performing the action, recorded in the audit log."""
    return x_actor_id


@app.exception_handler(DistributionEngineError)
async def engine_error_handler(request: Request, exc: DistributionEngineError):
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, PreconditionError):
        status_code = 409
    elif isinstance(exc, PayoutValidationError):
        status_code = 422
    else:
        status_code = 400

    body = {"success": False, "error": str(exc)}
    if isinstance(exc, CsvImportError):
        body["errors"] = exc.errors
    logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=body)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Payout Engine API"}


# =============================================================================
# ADMIN API: Distributions
# =============================================================================

admin = [Depends(verify_admin)]


@app.post("/api/admin/distributions/draft", dependencies=admin)
def create_draft_distribution(
    body: CreateDraftRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> DraftDistributionResult:
    return distributions.create_draft(db, body.property_id, body.rental_statement_id, actor_id)


@app.post("/api/admin/distributions/declare-from-statement", dependencies=admin)
def declare_distribution_from_statement(
    body: CreateDraftRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> DraftDistributionResult:
    return distributions.declare_from_statement(
        db, body.property_id, body.rental_statement_id, actor_id
    )


@app.get("/api/admin/distributions/{distribution_id}", dependencies=admin)
def get_distribution(distribution_id: uuid.UUID, db: Session = Depends(get_db)) -> DistributionSummary:
    return distributions.summary(db, distribution_id)


@app.get("/api/admin/distributions/{distribution_id}/validation", dependencies=admin)
def validate_distribution(distribution_id: uuid.UUID, db: Session = Depends(get_db)) -> ValidationReport:
    return distributions.validate(db, distribution_id)


@app.post("/api/admin/distributions/{distribution_id}/recalculate", dependencies=admin)
def recalculate_distribution(
    distribution_id: uuid.UUID,
    body: RecalculateRequest | None = None,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> DraftDistributionResult:
    net = body.net_distributable if body else None
    return distributions.recalculate(db, distribution_id, net, actor_id)


@app.post("/api/admin/distributions/{distribution_id}/submit", dependencies=admin)
def submit_distribution(
    distribution_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> ActionResponse:
    distributions.submit_for_approval(db, distribution_id, actor_id)
    return ActionResponse(message="Distribution submitted for approval")


@app.post("/api/admin/distributions/{distribution_id}/approve", dependencies=admin)
def approve_distribution(
    distribution_id: uuid.UUID,
    body: ApprovalRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> ActionResponse:
    distributions.approve(db, distribution_id, actor_id, body.notes)
    return ActionResponse(message="Distribution approved")


@app.post("/api/admin/distributions/{distribution_id}/reject", dependencies=admin)
def reject_distribution(
    distribution_id: uuid.UUID,
    body: ApprovalRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> ActionResponse:
    distributions.reject(db, distribution_id, body.notes, actor_id)
    return ActionResponse(message="Distribution rejected")


@app.post("/api/admin/distributions/{distribution_id}/declare", dependencies=admin)
def declare_distribution(
    distribution_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> ActionResponse:
    distributions.declare(db, distribution_id, actor_id)
    return ActionResponse(message="Distribution declared")


@app.delete("/api/admin/distributions/{distribution_id}", dependencies=admin)
def delete_distribution(
    distribution_id: uuid.UUID,
    body: DeleteDistributionRequest | None = None,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> ActionResponse:
    distributions.delete(db, distribution_id, actor_id, body.reason if body else None)
    return ActionResponse(message="Distribution deleted")


@app.get("/api/admin/distributions/{distribution_id}/payouts/export", dependencies=admin)
def export_payouts(distribution_id: uuid.UUID, db: Session = Depends(get_db)):
    return PlainTextResponse(
        payouts.export_csv(db, distribution_id),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="payouts-{distribution_id}.csv"'},
    )


@app.post("/api/admin/distributions/{distribution_id}/payouts/import", dependencies=admin)
def import_payouts(
    distribution_id: uuid.UUID,
    body: CsvImportRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> CsvImportResult:
    return payouts.import_csv(db, distribution_id, body.csv_data, actor_id)


# =============================================================================
# ADMIN API: Payouts
# =============================================================================


@app.post("/api/admin/payouts/approve", dependencies=admin)
def approve_payouts(
    body: PayoutIdsRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> BatchResult:
    return payouts.approve_many(db, body.payout_ids, actor_id, body.notes)


@app.post("/api/admin/payouts/submit", dependencies=admin)
def submit_payouts_for_approval(
    body: PayoutIdsRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> BatchResult:
    return payouts.submit_for_approval(db, body.payout_ids, actor_id, body.notes)


@app.post("/api/admin/payouts/bulk", dependencies=admin)
def bulk_update_payouts(
    body: BulkPayoutUpdate,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> BatchResult:
    return payouts.bulk_update(db, body, actor_id)


@app.post("/api/admin/payouts/{payout_id}/approve", dependencies=admin)
def approve_payout(
    payout_id: uuid.UUID,
    body: ApprovalRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> PayoutSummary:
    return PayoutSummary.model_validate(payouts.approve(db, payout_id, actor_id, body.notes))


@app.patch("/api/admin/payouts/{payout_id}", dependencies=admin)
def update_payout(
    payout_id: uuid.UUID,
    body: PayoutUpdateRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> PayoutSummary:
    reason = body.adjustment_reason
    changes = PayoutUpdate.model_validate(
        body.model_dump(exclude_unset=True, exclude={"adjustment_reason"})
    )
    return PayoutSummary.model_validate(payouts.update(db, payout_id, changes, actor_id, reason))


# =============================================================================
# ADMIN API: Investor payout history
# =============================================================================


@app.get("/api/admin/users/{user_id}/payouts", dependencies=admin)
def get_user_payouts(user_id: uuid.UUID, db: Session = Depends(get_db)) -> list[PayoutSummary]:
    return distributions.user_payouts(db, user_id)


@app.get("/api/admin/users/{user_id}/payouts/by-property", dependencies=admin)
def get_user_payouts_by_property(
    user_id: uuid.UUID, db: Session = Depends(get_db)
) -> list[PropertyPayoutGroup]:
    return distributions.user_payouts_by_property(db, user_id)


@app.get("/api/admin/users/{user_id}/payouts/by-month", dependencies=admin)
def get_user_payouts_by_month(
    user_id: uuid.UUID, db: Session = Depends(get_db)
) -> list[MonthlyPayoutGroup]:
    return distributions.user_payouts_by_month(db, user_id)


# =============================================================================
# ADMIN API: Reconciliation
# =============================================================================


@app.post("/api/admin/fix-underwriter-payouts", dependencies=admin)
def fix_underwriter(
    body: FixUnderwriterRequest,
    db: Session = Depends(get_db),
    actor_id: str = Depends(actor),
) -> ReconciliationResult:
    return fix_underwriter_payouts(db, body.distribution_id, actor_id)
