from contextlib import asynccontextmanager
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .logging_config import setup_logging
from .models import (
    DepositRequest, DebitRequest, CreditRequest, SettlementRequest, StatusUpdateRequest,
    LedgerOperationResponse, TransactionHistoryResponse, WalletSummary, TreasuryWallet,
    LedgerAuditReport,
)
from .service import (
    TreasuryWalletService, TreasuryWalletError, WalletNotFoundError,
    InsufficientBalanceError, InvalidAmountError, WalletSuspendedError,
    DuplicateReferenceError, MatchAlreadySettledError,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    yield


app = FastAPI(
    title=settings.APP_NAME,
    description="Admin Treasury wallet: funded by deposits, drawn down to fund matches, credited on settlement",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache()
def get_service() -> TreasuryWalletService:
    return TreasuryWalletService()


def _http_error(e: TreasuryWalletError) -> HTTPException:
    if isinstance(e, WalletNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, WalletSuspendedError):
        return HTTPException(status_code=status.HTTP_423_LOCKED, detail=str(e))
    if isinstance(e, (DuplicateReferenceError, MatchAlreadySettledError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "treasury-wallet"}


@app.get("/admins/{admin_id}/treasury/wallet", response_model=WalletSummary, tags=["Treasury"])
def get_wallet(admin_id: str, service: TreasuryWalletService = Depends(get_service)) -> WalletSummary:
    service.create_or_get_wallet(admin_id)
    summary = service.get_summary(admin_id)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Treasury wallet not found")
    return summary


@app.get(
    "/admins/{admin_id}/treasury/wallet/transactions",
    response_model=TransactionHistoryResponse,
    tags=["Treasury"],
)
def get_transactions(
    admin_id: str,
    limit: int = Query(default=settings.HISTORY_LIMIT_DEFAULT, ge=1, le=settings.HISTORY_LIMIT_MAX),
    offset: int = Query(default=0, ge=0),
    service: TreasuryWalletService = Depends(get_service),
) -> TransactionHistoryResponse:
    return service.get_transactions(admin_id, limit, offset)


@app.post(
    "/admins/{admin_id}/treasury/wallet/deposits",
    response_model=LedgerOperationResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Treasury"],
)
def deposit(
    admin_id: str, request: DepositRequest, service: TreasuryWalletService = Depends(get_service)
) -> LedgerOperationResponse:
    try:
        return service.deposit(admin_id, request)
    except TreasuryWalletError as e:
        raise _http_error(e)


@app.post(
    "/admins/{admin_id}/treasury/wallet/debits",
    response_model=LedgerOperationResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Treasury"],
)
def debit(
    admin_id: str, request: DebitRequest, service: TreasuryWalletService = Depends(get_service)
) -> LedgerOperationResponse:
    try:
        return service.debit(admin_id, request)
    except (WalletNotFoundError, WalletSuspendedError, InsufficientBalanceError, InvalidAmountError) as e:
        raise _http_error(e)


@app.post(
    "/admins/{admin_id}/treasury/wallet/credits",
    response_model=LedgerOperationResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Treasury"],
)
def credit(
    admin_id: str, request: CreditRequest, service: TreasuryWalletService = Depends(get_service)
) -> LedgerOperationResponse:
    try:
        return service.credit(admin_id, request)
    except (WalletNotFoundError, InvalidAmountError) as e:
        raise _http_error(e)


@app.post(
    "/admins/{admin_id}/treasury/wallet/settlements",
    response_model=LedgerOperationResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Treasury"],
)
def settle_match(
    admin_id: str, request: SettlementRequest, service: TreasuryWalletService = Depends(get_service)
) -> LedgerOperationResponse:
    try:
        return service.settle_match(admin_id, request)
    except TreasuryWalletError as e:
        raise _http_error(e)


@app.patch("/admins/{admin_id}/treasury/wallet/status", response_model=TreasuryWallet, tags=["Treasury"])
def set_status(
    admin_id: str, request: StatusUpdateRequest, service: TreasuryWalletService = Depends(get_service)
) -> TreasuryWallet:
    try:
        return service.set_status(admin_id, request.status)
    except WalletNotFoundError as e:
        raise _http_error(e)


@app.get("/admins/{admin_id}/treasury/wallet/audit", response_model=LedgerAuditReport, tags=["Treasury"])
def audit_wallet(admin_id: str, service: TreasuryWalletService = Depends(get_service)) -> LedgerAuditReport:
    try:
        return service.verify_ledger(admin_id)
    except WalletNotFoundError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
