import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .config import settings
from .database import get_db_connection
from .desk import CirculationDesk
from .errors import CirculationError
from .models import Actor

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# --- Request / response models ---
class CheckoutRequest(BaseModel):
    patron_id: int
    copy_id: Optional[int] = None
    barcode: Optional[str] = None


class ReturnRequest(BaseModel):
    loan_id: Optional[int] = None
    copy_id: Optional[int] = None
    barcode: Optional[str] = None


class RenewRequest(BaseModel):
    loan_id: int


class HoldRequest(BaseModel):
    patron_id: int
    work_id: int
    copy_id: Optional[int] = None


class PaymentRequest(BaseModel):
    amount: Decimal
    payment_type: Optional[str] = Field(None, description="e.g. cash, card")


class WaiveRequest(BaseModel):
    note: Optional[str] = None


class PreferenceUpdate(BaseModel):
    value: Optional[str] = None
    explanation: Optional[str] = None


class LoanModel(BaseModel):
    id: int
    patron_id: int
    copy_id: int
    start_date: str
    due_date: str
    return_date: Optional[str] = None
    renewal_count: int = 0
    last_renewed: Optional[str] = None


class HoldModel(BaseModel):
    id: int
    patron_id: int
    work_id: int
    copy_id: Optional[int] = None
    placed_at: str
    priority: int
    status: str
    ready_since: Optional[str] = None
    ready_copy_id: Optional[int] = None
    closed_at: Optional[str] = None


class LedgerEntryModel(BaseModel):
    id: int
    patron_id: int
    entry_type: str
    charged: str
    outstanding: str
    status: str
    created_at: str
    copy_id: Optional[int] = None
    loan_id: Optional[int] = None
    description: Optional[str] = None
    recorded_by: Optional[int] = None
    payment_type: Optional[str] = None
    related_entry_id: Optional[int] = None


class ReturnModel(BaseModel):
    loan: LoanModel
    fine: Optional[LedgerEntryModel] = None
    promoted_hold: Optional[HoldModel] = None


class AccountSummaryModel(BaseModel):
    patron_id: int
    open_loans: int
    overdue_loans: int
    active_holds: int
    outstanding: str


class PreferenceModel(BaseModel):
    variable: str
    value: Optional[str] = None
    effective_value: str
    explanation: Optional[str] = None
    updated_at: Optional[str] = None


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_actor(
    api_key: str = Security(api_key_header),
    actor_id: Optional[int] = Header(None, alias="X-Actor-Id"),
) -> Actor:
    """Map the API key to a staff or patron actor."""
    if api_key == settings.staff_api_key:
        return Actor.staff(actor_id)
    if api_key == settings.api_key:
        if actor_id is None:
            raise HTTPException(status_code=401, detail="X-Actor-Id header is required for patron access")
        return Actor.patron(actor_id)
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_desk(request: Request) -> CirculationDesk:
    return request.app.state.desk


def create_app(desk: Optional[CirculationDesk] = None) -> FastAPI:
    """Build the API around a desk; the default desk uses the configured store."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.app_name} {settings.app_version} starting ({settings.environment})")
        yield
        logger.info(f"{settings.app_name} shutting down")

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.desk = desk or CirculationDesk()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CirculationError)
    async def circulation_error_handler(request: Request, exc: CirculationError):
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    # --- Health ---
    @app.get("/health")
    async def health(desk: CirculationDesk = Depends(get_desk)):
        """Report whether the circulation store answers a trivial query."""
        db_ok = True
        try:
            conn = get_db_connection(desk.db_file)
            try:
                conn.execute("SELECT 1")
            finally:
                conn.close()
        except Exception as e:
            logger.warning(f"Health check could not reach the store: {e}")
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "db": db_ok,
            "version": settings.app_version,
        }

    # --- Circulation ---
    @app.post("/circulation/checkout", response_model=LoanModel, status_code=201)
    def checkout(payload: CheckoutRequest, actor: Actor = Depends(get_actor),
                 desk: CirculationDesk = Depends(get_desk)):
        loan = desk.checkout(payload.patron_id, actor, copy_id=payload.copy_id, barcode=payload.barcode)
        return loan.to_dict()

    @app.post("/circulation/return", response_model=ReturnModel)
    def return_copy(payload: ReturnRequest, actor: Actor = Depends(get_actor),
                    desk: CirculationDesk = Depends(get_desk)):
        result = desk.return_copy(actor, loan_id=payload.loan_id, copy_id=payload.copy_id, barcode=payload.barcode)
        return {
            "loan": result.loan.to_dict(),
            "fine": result.fine.to_dict() if result.fine else None,
            "promoted_hold": result.promoted_hold.to_dict() if result.promoted_hold else None,
        }

    @app.post("/circulation/renew", response_model=LoanModel)
    def renew(payload: RenewRequest, actor: Actor = Depends(get_actor),
              desk: CirculationDesk = Depends(get_desk)):
        return desk.renew(payload.loan_id, actor).to_dict()

    @app.get("/circulation/history", response_model=List[LoanModel])
    def history(
        patron_id: Optional[int] = Query(None),
        open_only: bool = Query(False),
        issued_from: Optional[date] = Query(None),
        issued_to: Optional[date] = Query(None),
        returned_from: Optional[date] = Query(None),
        returned_to: Optional[date] = Query(None),
        page: int = Query(1, ge=1),
        limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
        actor: Actor = Depends(get_actor),
        desk: CirculationDesk = Depends(get_desk),
    ):
        loans = desk.history(
            actor, patron_id=patron_id, open_only=open_only,
            issued_from=issued_from, issued_to=issued_to,
            returned_from=returned_from, returned_to=returned_to,
            page=page, limit=limit,
        )
        return [loan.to_dict() for loan in loans]

    @app.get("/circulation/loans/{loan_id}", response_model=LoanModel)
    def get_loan(loan_id: int, actor: Actor = Depends(get_actor), desk: CirculationDesk = Depends(get_desk)):
        return desk.get_loan(loan_id, actor).to_dict()

    # --- Holds ---
    @app.get("/holds", response_model=List[HoldModel])
    def list_holds(
        patron_id: Optional[int] = Query(None),
        work_id: Optional[int] = Query(None),
        active_only: bool = Query(False),
        actor: Actor = Depends(get_actor),
        desk: CirculationDesk = Depends(get_desk),
    ):
        holds = desk.list_holds(actor, patron_id=patron_id, work_id=work_id, active_only=active_only)
        return [hold.to_dict() for hold in holds]

    @app.post("/holds", response_model=HoldModel, status_code=201)
    def place_hold(payload: HoldRequest, actor: Actor = Depends(get_actor),
                   desk: CirculationDesk = Depends(get_desk)):
        return desk.place_hold(payload.patron_id, payload.work_id, actor, copy_id=payload.copy_id).to_dict()

    # Declared before the parameterised routes so "expire" is never read as an id
    @app.post("/holds/expire", response_model=List[HoldModel])
    def expire_holds(actor: Actor = Depends(get_actor), desk: CirculationDesk = Depends(get_desk)):
        return [hold.to_dict() for hold in desk.expire_stale_holds(actor)]

    @app.patch("/holds/{hold_id}/cancel", response_model=HoldModel)
    def cancel_hold(hold_id: int, actor: Actor = Depends(get_actor),
                    desk: CirculationDesk = Depends(get_desk)):
        return desk.cancel_hold(hold_id, actor).to_dict()

    @app.get("/holds/{hold_id}", response_model=HoldModel)
    def get_hold(hold_id: int, actor: Actor = Depends(get_actor), desk: CirculationDesk = Depends(get_desk)):
        return desk.get_hold(hold_id, actor).to_dict()

    # --- Accounts ---
    @app.get("/accounts", response_model=List[LedgerEntryModel])
    def list_account(patron_id: int = Query(...), actor: Actor = Depends(get_actor),
                     desk: CirculationDesk = Depends(get_desk)):
        return [entry.to_dict() for entry in desk.list_for_patron(patron_id, actor)]

    @app.get("/accounts/summary", response_model=AccountSummaryModel)
    def account_summary(patron_id: int = Query(...), actor: Actor = Depends(get_actor),
                        desk: CirculationDesk = Depends(get_desk)):
        summary = desk.account_summary(patron_id, actor)
        return {
            "patron_id": summary.patron_id,
            "open_loans": summary.open_loans,
            "overdue_loans": summary.overdue_loans,
            "active_holds": summary.active_holds,
            "outstanding": str(summary.outstanding),
        }

    @app.get("/accounts/{entry_id}", response_model=LedgerEntryModel)
    def get_entry(entry_id: int, actor: Actor = Depends(get_actor), desk: CirculationDesk = Depends(get_desk)):
        return desk.get_entry(entry_id, actor).to_dict()

    @app.post("/accounts/{entry_id}/pay", response_model=LedgerEntryModel)
    def pay(entry_id: int, payload: PaymentRequest, actor: Actor = Depends(get_actor),
            desk: CirculationDesk = Depends(get_desk)):
        return desk.record_payment(entry_id, payload.amount, payload.payment_type, actor).to_dict()

    @app.post("/accounts/{entry_id}/waive", response_model=LedgerEntryModel)
    def waive(entry_id: int, payload: Optional[WaiveRequest] = None, actor: Actor = Depends(get_actor),
              desk: CirculationDesk = Depends(get_desk)):
        return desk.waive(entry_id, actor, note=payload.note if payload else None).to_dict()

    # --- Preferences ---
    @app.get("/preferences", response_model=List[PreferenceModel])
    def list_preferences(actor: Actor = Depends(get_actor), desk: CirculationDesk = Depends(get_desk)):
        return desk.list_preferences(actor)

    @app.put("/preferences/{variable}", response_model=PreferenceModel)
    def update_preference(variable: str, payload: PreferenceUpdate, actor: Actor = Depends(get_actor),
                          desk: CirculationDesk = Depends(get_desk)):
        return desk.update_preference(variable, payload.value, actor, explanation=payload.explanation)

    return app


app = create_app()
