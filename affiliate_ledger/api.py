import logging
import secrets
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader

from .config import Settings, get_settings
from .core import AffiliateLedger
from .errors import (
    IntegrityError,
    LedgerError,
    LockTimeoutError,
    NotFoundError,
    PayoutError,
    PayoutStuckError,
)
from .logging_config import setup_logging
from .models import (
    AdminStats,
    CreatePurchaseRequest,
    DecisionRequest,
    EarningHistoryResponse,
    EarningRecord,
    EarningStatus,
    MarkPaidRequest,
    PurchaseResponse,
    RegisterUserRequest,
    SetParentRequest,
    TeamResponse,
    User,
    UserBalance,
    UserListResponse,
    WithdrawalCreateRequest,
    WithdrawalHistoryResponse,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .withdrawals import PayoutRail

logger = logging.getLogger(__name__)

admin_token_header = APIKeyHeader(name="X-Admin-Token", auto_error=False)


def get_ledger(request: Request) -> AffiliateLedger:
    return request.app.state.ledger


def require_admin(
    token: Optional[str] = Depends(admin_token_header),
    ledger: AffiliateLedger = Depends(get_ledger),
) -> str:
    if not token or not secrets.compare_digest(token, ledger.settings.ADMIN_TOKEN):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")
    return token


def http_error(e: LedgerError) -> HTTPException:
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, IntegrityError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, (PayoutStuckError, PayoutError)):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(e, LockTimeoutError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(e))


router = APIRouter()
admin_router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "affiliate-ledger"}


@router.post("/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterUserRequest, ledger: AffiliateLedger = Depends(get_ledger)) -> User:
    try:
        return ledger.users.register(referral_code=request.referral_code, user_id=request.user_id)
    except LedgerError as e:
        raise http_error(e)


@router.get("/users/{user_id}", response_model=User, tags=["Users"])
def get_user(user_id: UUID, ledger: AffiliateLedger = Depends(get_ledger)) -> User:
    try:
        return ledger.users.get_user(user_id)
    except LedgerError as e:
        raise http_error(e)


@router.get("/users/{user_id}/ancestors", response_model=list[UUID], tags=["Referrals"])
def get_ancestors(
    user_id: UUID, max_depth: int = Query(default=2, ge=0), ledger: AffiliateLedger = Depends(get_ledger)
) -> list[UUID]:
    try:
        return ledger.graph.get_ancestors(user_id, max_depth)
    except LedgerError as e:
        raise http_error(e)


@router.get("/users/{user_id}/team", response_model=TeamResponse, tags=["Referrals"])
def get_team(user_id: UUID, ledger: AffiliateLedger = Depends(get_ledger)) -> TeamResponse:
    try:
        return ledger.queries.get_team(user_id)
    except LedgerError as e:
        raise http_error(e)


@router.post("/referrals", status_code=status.HTTP_204_NO_CONTENT, tags=["Referrals"])
def set_parent(request: SetParentRequest, ledger: AffiliateLedger = Depends(get_ledger)) -> None:
    try:
        ledger.graph.set_parent(request.child_id, request.parent_id)
    except LedgerError as e:
        raise http_error(e)


@router.post("/purchases", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED, tags=["Purchases"])
def create_purchase(request: CreatePurchaseRequest, ledger: AffiliateLedger = Depends(get_ledger)) -> PurchaseResponse:
    try:
        return ledger.commissions.process_purchase(request)
    except LedgerError as e:
        raise http_error(e)


@router.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Ledger"])
def get_user_balance(user_id: UUID, ledger: AffiliateLedger = Depends(get_ledger)) -> UserBalance:
    try:
        return ledger.queries.get_balance(user_id)
    except LedgerError as e:
        raise http_error(e)


@router.get("/users/{user_id}/earnings", response_model=EarningHistoryResponse, tags=["Ledger"])
def get_user_earnings(
    user_id: UUID,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ledger: AffiliateLedger = Depends(get_ledger),
) -> EarningHistoryResponse:
    try:
        return ledger.queries.list_earnings(user_id, limit, offset)
    except LedgerError as e:
        raise http_error(e)


@router.post("/withdrawals", response_model=WithdrawalRequest, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
def request_withdrawal(
    request: WithdrawalCreateRequest, ledger: AffiliateLedger = Depends(get_ledger)
) -> WithdrawalRequest:
    try:
        return ledger.withdrawals.request_withdrawal(request.user_id, request.amount)
    except LedgerError as e:
        raise http_error(e)


@router.get("/users/{user_id}/withdrawals", response_model=WithdrawalHistoryResponse, tags=["Withdrawals"])
def get_user_withdrawals(
    user_id: UUID,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ledger: AffiliateLedger = Depends(get_ledger),
) -> WithdrawalHistoryResponse:
    try:
        return ledger.queries.list_withdrawals(user_id, limit, offset)
    except LedgerError as e:
        raise http_error(e)


@admin_router.get("/withdrawals", response_model=WithdrawalHistoryResponse)
def admin_list_withdrawals(
    status_filter: Optional[WithdrawalStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ledger: AffiliateLedger = Depends(get_ledger),
) -> WithdrawalHistoryResponse:
    return ledger.queries.list_all_withdrawals(status_filter, limit, offset)


@admin_router.get("/withdrawals/stuck", response_model=list[WithdrawalRequest])
def admin_list_stuck_withdrawals(ledger: AffiliateLedger = Depends(get_ledger)) -> list[WithdrawalRequest]:
    return ledger.queries.list_stuck_withdrawals()


@admin_router.post("/withdrawals/{withdrawal_id}/decision", response_model=WithdrawalRequest)
def decide_withdrawal(
    withdrawal_id: UUID, request: DecisionRequest, ledger: AffiliateLedger = Depends(get_ledger)
) -> WithdrawalRequest:
    try:
        return ledger.withdrawals.decide(withdrawal_id, request.outcome, decided_by=request.decided_by)
    except LedgerError as e:
        raise http_error(e)


@admin_router.post("/withdrawals/{withdrawal_id}/retry", response_model=WithdrawalRequest)
def retry_withdrawal(withdrawal_id: UUID, ledger: AffiliateLedger = Depends(get_ledger)) -> WithdrawalRequest:
    try:
        return ledger.withdrawals.retry_settlement(withdrawal_id)
    except LedgerError as e:
        raise http_error(e)


@admin_router.get("/earnings", response_model=EarningHistoryResponse)
def admin_list_earnings(
    status_filter: Optional[EarningStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ledger: AffiliateLedger = Depends(get_ledger),
) -> EarningHistoryResponse:
    return ledger.queries.list_all_earnings(status_filter, limit, offset)


@admin_router.post("/earnings/mark-paid", response_model=list[EarningRecord])
def mark_earnings_paid(request: MarkPaidRequest, ledger: AffiliateLedger = Depends(get_ledger)) -> list[EarningRecord]:
    try:
        return ledger.ledger.mark_paid(request.earning_ids)
    except LedgerError as e:
        raise http_error(e)


@admin_router.get("/users", response_model=UserListResponse)
def admin_list_users(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ledger: AffiliateLedger = Depends(get_ledger),
) -> UserListResponse:
    return ledger.queries.list_users(limit, offset)


@admin_router.post("/users/{user_id}/deactivate", response_model=User)
def deactivate_user(user_id: UUID, ledger: AffiliateLedger = Depends(get_ledger)) -> User:
    try:
        return ledger.users.deactivate(user_id)
    except LedgerError as e:
        raise http_error(e)


@admin_router.get("/stats", response_model=AdminStats)
def admin_stats(ledger: AffiliateLedger = Depends(get_ledger)) -> AdminStats:
    return ledger.queries.admin_stats()


def create_app(
    settings: Optional[Settings] = None,
    payout_rail: Optional[PayoutRail] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Affiliate commission and withdrawal ledger",
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.ledger = AffiliateLedger(settings=settings, payout_rail=payout_rail)
    app.include_router(router)
    app.include_router(admin_router)
    logger.info("Affiliate ledger API ready")
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
