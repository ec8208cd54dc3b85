from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .models import (
    AddCreditsRequest, BookingRequest, BookingResponse, Company, CompanySummary,
    DistributionRequest, Employee, EmployeeCreate, EmployeeSummary, EmployeeUpdate,
    PointDistribution, RedemptionResponse, Service, ServiceCategory, ServiceCreate,
    ServiceFilters, ServiceUpdate, Transaction, TransactionFilters, TransactionStatus,
    ValidateVoucherRequest, Voucher, VoucherRequest,
)
from .planning import plan_equal, plan_proportional
from .service import (
    WelfareStore, WelfareStoreError, NotFoundError, InsufficientBalanceError,
    VoucherExpiredError, InvalidStateTransitionError, PartnerMismatchError,
    ServiceLockedError,
)
from .snapshot import JsonSnapshot

_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientBalanceError, status.HTTP_400_BAD_REQUEST),
    (VoucherExpiredError, status.HTTP_410_GONE),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (ServiceLockedError, status.HTTP_409_CONFLICT),
    (PartnerMismatchError, status.HTTP_403_FORBIDDEN),
)

router = APIRouter()


def get_store(request: Request) -> WelfareStore:
    return request.app.state.store


def _http_error(e: WelfareStoreError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail={"code": e.code, "message": str(e)})
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"code": e.code, "message": str(e)})


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "welfare-ledger"}


@router.get("/companies/{company_id}", response_model=Company, tags=["Companies"])
def get_company(company_id: str, store: WelfareStore = Depends(get_store)) -> Company:
    try:
        return store.get_company(company_id)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.post("/companies/{company_id}/credits", response_model=Company, tags=["Companies"])
def add_credits(company_id: str, request: AddCreditsRequest, store: WelfareStore = Depends(get_store)) -> Company:
    try:
        return store.add_credits(company_id, request.amount)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.post("/companies/{company_id}/distributions", response_model=Company, tags=["Companies"])
def distribute_points(
    company_id: str, request: DistributionRequest, store: WelfareStore = Depends(get_store)
) -> Company:
    try:
        return store.apply_distribution(company_id, request.distributions)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.get("/companies/{company_id}/distributions/plan", response_model=list[PointDistribution], tags=["Companies"])
def plan_distribution(
    company_id: str,
    mode: Literal["equal", "proportional"] = "equal",
    store: WelfareStore = Depends(get_store),
) -> list[PointDistribution]:
    try:
        company = store.get_company(company_id)
    except WelfareStoreError as e:
        raise _http_error(e)
    employees = store.list_employees(company_id, active_only=True)
    if mode == "proportional":
        return plan_proportional({e.id: e.total_points for e in employees}, company.available_credits)
    return plan_equal([e.id for e in employees], company.available_credits)


@router.get("/companies/{company_id}/summary", response_model=CompanySummary, tags=["Companies"])
def company_summary(company_id: str, store: WelfareStore = Depends(get_store)) -> CompanySummary:
    try:
        return store.company_summary(company_id)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.get("/companies/{company_id}/employees", response_model=list[Employee], tags=["Companies"])
def list_employees(
    company_id: str, active_only: bool = False, store: WelfareStore = Depends(get_store)
) -> list[Employee]:
    return store.list_employees(company_id, active_only=active_only)


@router.post(
    "/companies/{company_id}/employees", response_model=Employee,
    status_code=status.HTTP_201_CREATED, tags=["Companies"],
)
def add_employee(company_id: str, request: EmployeeCreate, store: WelfareStore = Depends(get_store)) -> Employee:
    try:
        return store.add_employee(company_id, request)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.get("/employees/{employee_id}", response_model=Employee, tags=["Employees"])
def get_employee(employee_id: str, store: WelfareStore = Depends(get_store)) -> Employee:
    try:
        return store.get_employee(employee_id)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.patch("/employees/{employee_id}", response_model=Employee, tags=["Employees"])
def update_employee(employee_id: str, request: EmployeeUpdate, store: WelfareStore = Depends(get_store)) -> Employee:
    try:
        return store.update_employee(employee_id, request)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.get("/employees/{employee_id}/summary", response_model=EmployeeSummary, tags=["Employees"])
def employee_summary(employee_id: str, store: WelfareStore = Depends(get_store)) -> EmployeeSummary:
    try:
        return store.employee_summary(employee_id)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.get("/employees/{employee_id}/transactions", response_model=list[Transaction], tags=["Employees"])
def employee_transactions(employee_id: str, store: WelfareStore = Depends(get_store)) -> list[Transaction]:
    return store.get_transactions_by_employee(employee_id)


@router.get("/services", response_model=list[Service], tags=["Services"])
def list_services(
    category: Optional[ServiceCategory] = None,
    min_points: Optional[int] = None,
    max_points: Optional[int] = None,
    search_term: Optional[str] = None,
    active_only: bool = False,
    store: WelfareStore = Depends(get_store),
) -> list[Service]:
    return store.list_services(ServiceFilters(
        category=category, min_points=min_points, max_points=max_points,
        search_term=search_term, active_only=active_only,
    ))


@router.post("/services", response_model=Service, status_code=status.HTTP_201_CREATED, tags=["Services"])
def add_service(request: ServiceCreate, store: WelfareStore = Depends(get_store)) -> Service:
    return store.add_service(request)


@router.get("/services/{service_id}", response_model=Service, tags=["Services"])
def get_service(service_id: str, store: WelfareStore = Depends(get_store)) -> Service:
    try:
        return store.get_service(service_id)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.patch("/services/{service_id}", response_model=Service, tags=["Services"])
def update_service(service_id: str, request: ServiceUpdate, store: WelfareStore = Depends(get_store)) -> Service:
    try:
        return store.update_service(service_id, request)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED, tags=["Bookings"])
def book_service(request: BookingRequest, store: WelfareStore = Depends(get_store)) -> BookingResponse:
    try:
        transaction = store.create_booking(request.employee_id, request.service_id)
    except WelfareStoreError as e:
        raise _http_error(e)
    return BookingResponse(
        transaction=transaction,
        employee=store.get_employee(request.employee_id),
        message="Service booked successfully",
    )


@router.post("/vouchers", response_model=Voucher, status_code=status.HTTP_201_CREATED, tags=["Vouchers"])
def generate_voucher(request: VoucherRequest, store: WelfareStore = Depends(get_store)) -> Voucher:
    try:
        return store.generate_qr(request.employee_id, request.service_id, request.transaction_id)
    except WelfareStoreError as e:
        raise _http_error(e)


@router.post("/vouchers/validate", response_model=RedemptionResponse, tags=["Vouchers"])
def validate_voucher(request: ValidateVoucherRequest, store: WelfareStore = Depends(get_store)) -> RedemptionResponse:
    try:
        transaction = store.redeem_voucher(request.voucher, request.partner_id)
    except WelfareStoreError as e:
        raise _http_error(e)
    return RedemptionResponse(transaction=transaction, message="Transaction completed successfully")


@router.get("/vouchers/active", response_model=list[Voucher], tags=["Vouchers"])
def active_vouchers(store: WelfareStore = Depends(get_store)) -> list[Voucher]:
    return store.list_active_vouchers()


@router.get("/partners/{partner_id}/transactions", response_model=list[Transaction], tags=["Partners"])
def partner_transactions(partner_id: str, store: WelfareStore = Depends(get_store)) -> list[Transaction]:
    return store.get_transactions_by_partner(partner_id)


@router.get("/transactions", response_model=list[Transaction], tags=["Transactions"])
def list_transactions(
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    employee_id: Optional[str] = None,
    partner_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    store: WelfareStore = Depends(get_store),
) -> list[Transaction]:
    return store.list_transactions(TransactionFilters(
        status=status_filter, employee_id=employee_id, partner_id=partner_id,
        date_from=date_from, date_to=date_to,
    ))


def create_app(store: Optional[WelfareStore] = None, root_path: str = "") -> FastAPI:
    app = FastAPI(
        title="Welfare Ledger API",
        description="Company credits, employee points and QR voucher redemption for corporate welfare",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if store is None:
        snapshot = JsonSnapshot(settings.SNAPSHOT_PATH) if settings.SNAPSHOT_PATH else None
        store = WelfareStore(snapshot=snapshot)
    app.state.store = store
    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    from .logging_config import setup_logging

    setup_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
