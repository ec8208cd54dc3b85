from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

import structlog

from .config import settings
from .models import (
    ServiceCategory,
    TransactionStatus,
    Company,
    Employee,
    Service,
    Transaction,
    Voucher,
    PointDistribution,
    EmployeeCreate,
    EmployeeUpdate,
    ServiceCreate,
    ServiceUpdate,
    ServiceFilters,
    TransactionFilters,
    EmployeeSummary,
    CompanySummary,
    StoreState,
)
from .snapshot import JsonSnapshot

logger = structlog.get_logger("welfare.store")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WelfareStoreError(Exception):
    code = "error"


class NotFoundError(WelfareStoreError):
    code = "not_found"


class CompanyNotFoundError(NotFoundError):
    pass


class EmployeeNotFoundError(NotFoundError):
    pass


class ServiceNotFoundError(NotFoundError):
    pass


class TransactionNotFoundError(NotFoundError):
    pass


class VoucherNotFoundError(NotFoundError):
    pass


class InsufficientBalanceError(WelfareStoreError):
    code = "insufficient_balance"


class VoucherExpiredError(WelfareStoreError):
    code = "expired"


class InvalidStateTransitionError(WelfareStoreError):
    code = "invalid_state"


class PartnerMismatchError(WelfareStoreError):
    code = "partner_mismatch"


class ServiceLockedError(WelfareStoreError):
    code = "service_locked"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _ts(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


class InMemoryStorage:
    def __init__(self, seed: bool = True):
        self.companies: dict[str, dict] = {}
        self.employees: dict[str, dict] = {}
        self.services: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.active_vouchers: list[dict] = []
        if seed:
            self._seed_data()

    def load_state(self, state: StoreState) -> None:
        self.companies = {c.id: c.model_dump(exclude={"available_credits"}) for c in state.companies}
        self.employees = {e.id: e.model_dump() for e in state.employees}
        self.services = {s.id: s.model_dump() for s in state.services}
        self.transactions = {t.id: t.model_dump() for t in state.transactions}
        self.active_vouchers = []

    def dump_state(self) -> StoreState:
        return StoreState(
            companies=[Company(**c) for c in self.companies.values()],
            employees=[Employee(**e) for e in self.employees.values()],
            services=[Service(**s) for s in self.services.values()],
            transactions=[Transaction(**t) for t in self.transactions.values()],
        )

    def _seed_data(self):
        self.companies["comp_1"] = {
            "id": "comp_1", "name": "TechCorp Verona", "email": "welfare@techcorp.com",
            "total_credits": 15000, "used_credits": 3500,
            "created_at": _ts("2024-01-01T00:00:00"), "updated_at": _ts("2024-01-15T00:00:00"),
        }

        for emp_id, first, last, phone, available, used, updated in (
            ("emp_1", "Mario", "Rossi", "+39 333 123 4567", 750, 250, "2024-01-15"),
            ("emp_2", "Giulia", "Bianchi", "+39 333 987 6543", 450, 550, "2024-01-10"),
            ("emp_3", "Luca", "Verdi", "+39 333 456 7890", 200, 300, "2024-01-12"),
        ):
            self.employees[emp_id] = {
                "id": emp_id, "company_id": "comp_1",
                "first_name": first, "last_name": last,
                "email": f"{first.lower()}.{last.lower()}@techcorp.com", "phone": phone,
                "available_points": available, "used_points": used,
                "total_points": available + used, "is_active": True,
                "created_at": _ts("2024-01-01T00:00:00"), "updated_at": _ts(f"{updated}T00:00:00"),
            }

        for srv_id, partner_id, name, description, category, points, price, discount in (
            ("srv_1", "ptr_1", "Personal Training",
             "Sessione di allenamento personalizzato con trainer qualificato da 60 minuti",
             ServiceCategory.FITNESS, 200, 50.0, 20.0),
            ("srv_2", "ptr_2", "Massaggio Rilassante",
             "Massaggio rilassante di 60 minuti per ridurre stress e tensioni",
             ServiceCategory.WELLNESS, 150, 80.0, 25.0),
            ("srv_3", "ptr_3", "Consulenza Nutrizionale",
             "Consulenza personalizzata con nutrizionista certificato",
             ServiceCategory.NUTRITION, 100, 60.0, 15.0),
            ("srv_4", "ptr_1", "Corso Yoga",
             "Lezione di yoga di gruppo per principianti e intermedi",
             ServiceCategory.FITNESS, 80, 25.0, 0.0),
        ):
            self.services[srv_id] = {
                "id": srv_id, "partner_id": partner_id, "name": name,
                "description": description, "category": category,
                "points_required": points, "original_price": price,
                "discount_percentage": discount, "max_redemptions": None,
                "is_active": True,
                "created_at": _ts("2024-01-01T00:00:00"), "updated_at": _ts("2024-01-15T00:00:00"),
            }

        self.transactions["txn_1"] = {
            "id": "txn_1", "employee_id": "emp_1", "service_id": "srv_1",
            "partner_id": "ptr_1", "company_id": "comp_1", "points_used": 200,
            "status": TransactionStatus.COMPLETED, "voucher_code": "QR_PT_20240115_001",
            "redeemed_at": _ts("2024-01-15T14:30:00"),
            "created_at": _ts("2024-01-15T14:25:00"), "updated_at": _ts("2024-01-15T14:30:00"),
        }
        self.transactions["txn_2"] = {
            "id": "txn_2", "employee_id": "emp_2", "service_id": "srv_2",
            "partner_id": "ptr_2", "company_id": "comp_1", "points_used": 150,
            "status": TransactionStatus.COMPLETED, "voucher_code": "QR_MS_20240112_002",
            "redeemed_at": _ts("2024-01-12T17:00:00"),
            "created_at": _ts("2024-01-12T16:55:00"), "updated_at": _ts("2024-01-12T17:00:00"),
        }


class WelfareStore:
    """
    In-memory welfare ledger: company credits, employee points, the
    service catalog, bookings and redemption vouchers.

    The booking and redemption operations come in two flavours. The
    sentinel ones (``distribute_points``, ``book_service``, ``validate_qr``)
    never raise on business failures; they log and return ``False`` or
    ``""``. The strict ones (``apply_distribution``, ``create_booking``,
    ``redeem_voucher``) raise a ``WelfareStoreError`` subclass instead.

    Voucher expiry is checked only when a voucher is presented, so
    ``list_active_vouchers`` can return vouchers that have already expired.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        clock: Optional[Clock] = None,
        voucher_ttl_minutes: Optional[int] = None,
        snapshot: Optional[JsonSnapshot] = None,
    ):
        self.storage = storage or InMemoryStorage(seed=settings.SEED_DEMO_DATA)
        self.clock = clock or utcnow
        self.voucher_ttl = timedelta(
            minutes=voucher_ttl_minutes if voucher_ttl_minutes is not None else settings.VOUCHER_TTL_MINUTES
        )
        self.snapshot = snapshot
        if snapshot:
            state = snapshot.load()
            if state is not None:
                self.storage.load_state(state)
                logger.info("snapshot_restored", path=str(snapshot.path),
                            employees=len(state.employees), transactions=len(state.transactions))

    # Company

    def add_credits(self, company_id: str, amount: int) -> Company:
        if amount <= 0:
            raise ValueError("amount must be positive")
        company_data = self._company_data(company_id)
        company_data["total_credits"] += amount
        company_data["updated_at"] = self.clock()
        self._persist()
        logger.info("credits_added", company_id=company_id, amount=amount)
        return Company(**company_data)

    def apply_distribution(self, company_id: str, distributions: list[PointDistribution]) -> Company:
        company_data = self._company_data(company_id)

        per_employee: dict[str, int] = defaultdict(int)
        for dist in distributions:
            if dist.points <= 0:
                raise ValueError(f"points for {dist.employee_id} must be positive")
            per_employee[dist.employee_id] += dist.points

        for employee_id in per_employee:
            employee_data = self.storage.employees.get(employee_id)
            if not employee_data or employee_data["company_id"] != company_id:
                raise EmployeeNotFoundError(f"Employee {employee_id} not found in company {company_id}")

        total = sum(per_employee.values())
        available = company_data["total_credits"] - company_data["used_credits"]
        if total > available:
            raise InsufficientBalanceError(
                f"Distribution of {total} points exceeds {available} available credits"
            )

        now = self.clock()
        for employee_id, points in per_employee.items():
            employee_data = self.storage.employees[employee_id]
            employee_data["available_points"] += points
            employee_data["total_points"] += points
            employee_data["updated_at"] = now

        company_data["used_credits"] += total
        company_data["updated_at"] = now
        self._persist()
        logger.info("points_distributed", company_id=company_id, total=total, employees=len(per_employee))
        return Company(**company_data)

    def distribute_points(self, company_id: str, distributions: list[PointDistribution]) -> bool:
        try:
            self.apply_distribution(company_id, distributions)
        except (WelfareStoreError, ValueError) as e:
            logger.warning("distribution_failed", company_id=company_id,
                           error=getattr(e, "code", "invalid"), detail=str(e))
            return False
        return True

    def get_company(self, company_id: str) -> Company:
        return Company(**self._company_data(company_id))

    def company_summary(self, company_id: str) -> CompanySummary:
        company = self.get_company(company_id)
        transactions = [t for t in self.storage.transactions.values() if t["company_id"] == company_id]
        return CompanySummary(
            company=company,
            active_employees=len(self.list_employees(company_id, active_only=True)),
            total_transactions=len(transactions),
            points_redeemed=sum(t["points_used"] for t in transactions if t["status"] == TransactionStatus.COMPLETED),
            points_pending=sum(t["points_used"] for t in transactions if t["status"] == TransactionStatus.PENDING),
        )

    # Employees

    def add_employee(self, company_id: str, data: EmployeeCreate) -> Employee:
        self._company_data(company_id)
        now = self.clock()
        employee_id = f"emp_{int(now.timestamp() * 1000)}_{uuid4().hex[:6]}"
        employee_data = {
            **data.model_dump(),
            "id": employee_id,
            "company_id": company_id,
            "available_points": 0, "used_points": 0, "total_points": 0,
            "created_at": now, "updated_at": now,
        }
        self.storage.employees[employee_id] = employee_data
        self._persist()
        logger.info("employee_added", company_id=company_id, employee_id=employee_id)
        return Employee(**employee_data)

    def update_employee(self, employee_id: str, updates: EmployeeUpdate) -> Employee:
        employee_data = self.storage.employees.get(employee_id)
        if not employee_data:
            raise EmployeeNotFoundError(f"Employee {employee_id} not found")
        employee_data.update(updates.model_dump(exclude_unset=True))
        employee_data["updated_at"] = self.clock()
        self._persist()
        return Employee(**employee_data)

    def get_employee(self, employee_id: str) -> Employee:
        employee_data = self.storage.employees.get(employee_id)
        if not employee_data:
            raise EmployeeNotFoundError(f"Employee {employee_id} not found")
        return Employee(**employee_data)

    def list_employees(self, company_id: str, active_only: bool = False) -> list[Employee]:
        return [
            Employee(**e) for e in self.storage.employees.values()
            if e["company_id"] == company_id and (e["is_active"] or not active_only)
        ]

    def employee_summary(self, employee_id: str, recent: int = 5) -> EmployeeSummary:
        employee = self.get_employee(employee_id)
        transactions = self.get_transactions_by_employee(employee_id)
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return EmployeeSummary(
            employee=employee,
            recent_transactions=transactions[:recent],
            pending_count=sum(1 for t in transactions if t.status == TransactionStatus.PENDING),
            completed_count=sum(1 for t in transactions if t.status == TransactionStatus.COMPLETED),
        )

    # Catalog

    def add_service(self, data: ServiceCreate) -> Service:
        now = self.clock()
        service_id = f"srv_{int(now.timestamp() * 1000)}_{uuid4().hex[:6]}"
        service_data = {**data.model_dump(), "id": service_id, "created_at": now, "updated_at": now}
        self.storage.services[service_id] = service_data
        self._persist()
        logger.info("service_added", partner_id=data.partner_id, service_id=service_id)
        return Service(**service_data)

    def update_service(self, service_id: str, updates: ServiceUpdate) -> Service:
        service_data = self.storage.services.get(service_id)
        if not service_data:
            raise ServiceNotFoundError(f"Service {service_id} not found")
        if any(
            t["service_id"] == service_id and t["status"] == TransactionStatus.COMPLETED
            for t in self.storage.transactions.values()
        ):
            raise ServiceLockedError(f"Service {service_id} has been redeemed and can no longer change")
        service_data.update(updates.model_dump(exclude_unset=True, exclude_none=True))
        service_data["updated_at"] = self.clock()
        self._persist()
        return Service(**service_data)

    def get_service(self, service_id: str) -> Service:
        service_data = self.storage.services.get(service_id)
        if not service_data:
            raise ServiceNotFoundError(f"Service {service_id} not found")
        return Service(**service_data)

    def list_services(self, filters: Optional[ServiceFilters] = None) -> list[Service]:
        filters = filters or ServiceFilters()
        services = [Service(**s) for s in self.storage.services.values()]
        if filters.category:
            services = [s for s in services if s.category == filters.category]
        if filters.min_points is not None:
            services = [s for s in services if s.points_required >= filters.min_points]
        if filters.max_points is not None:
            services = [s for s in services if s.points_required <= filters.max_points]
        if filters.search_term:
            term = filters.search_term.lower()
            services = [s for s in services if term in s.name.lower()]
        if filters.active_only:
            services = [s for s in services if s.is_active]
        return services

    # Bookings and vouchers

    def create_booking(self, employee_id: str, service_id: str) -> Transaction:
        employee_data = self.storage.employees.get(employee_id)
        if not employee_data:
            raise EmployeeNotFoundError(f"Employee {employee_id} not found")
        service_data = self.storage.services.get(service_id)
        if not service_data:
            raise ServiceNotFoundError(f"Service {service_id} not found")

        points = service_data["points_required"]
        if employee_data["available_points"] < points:
            raise InsufficientBalanceError(
                f"Employee {employee_id} has {employee_data['available_points']} points, {points} required"
            )

        now = self.clock()
        stamp = int(now.timestamp() * 1000)
        transaction_id = f"txn_{stamp}_{uuid4().hex[:9]}"
        transaction_data = {
            "id": transaction_id,
            "employee_id": employee_id,
            "service_id": service_id,
            "partner_id": service_data["partner_id"],
            "company_id": employee_data["company_id"],
            "points_used": points,
            "status": TransactionStatus.PENDING,
            "voucher_code": f"QR_{service_id.upper()}_{stamp}",
            "redeemed_at": None,
            "created_at": now,
            "updated_at": now,
        }

        employee_data["available_points"] -= points
        employee_data["used_points"] += points
        employee_data["updated_at"] = now
        self.storage.transactions[transaction_id] = transaction_data
        self._persist()

        logger.info("service_booked", employee_id=employee_id, service_id=service_id,
                    transaction_id=transaction_id, points=points)
        return Transaction(**transaction_data)

    def book_service(self, employee_id: str, service_id: str) -> str:
        try:
            return self.create_booking(employee_id, service_id).id
        except WelfareStoreError as e:
            logger.warning("booking_failed", employee_id=employee_id, service_id=service_id,
                           error=e.code, detail=str(e))
            return ""

    def generate_qr(self, employee_id: str, service_id: str, transaction_id: Optional[str] = None) -> Voucher:
        service_data = self.storage.services.get(service_id)
        if not service_data:
            raise ServiceNotFoundError(f"Service {service_id} not found")

        transaction_data = None
        if transaction_id:
            transaction_data = self.storage.transactions.get(transaction_id)
            if (
                not transaction_data
                or transaction_data["employee_id"] != employee_id
                or transaction_data["service_id"] != service_id
            ):
                raise TransactionNotFoundError(
                    f"Transaction {transaction_id} not found for {employee_id}/{service_id}"
                )
        else:
            transaction_data = self._latest_pending(employee_id, service_id)

        now = self.clock()
        if transaction_data:
            bound_id, code = transaction_data["id"], transaction_data["voucher_code"]
        else:
            # Without a booking there is nothing to settle; the voucher will
            # never validate.
            bound_id = f"qr_{int(now.timestamp() * 1000)}_{uuid4().hex[:9]}"
            code = f"QR_{service_id.upper()}_{int(now.timestamp() * 1000)}"
            logger.warning("voucher_unbound", employee_id=employee_id, service_id=service_id)

        voucher = Voucher(
            transaction_id=bound_id,
            employee_id=employee_id,
            service_id=service_id,
            points_to_redeem=service_data["points_required"],
            code=code,
            created_at=now,
            expires_at=now + self.voucher_ttl,
        )
        self.storage.active_vouchers.append(voucher.model_dump())
        logger.info("voucher_generated", transaction_id=bound_id, expires_at=voucher.expires_at.isoformat())
        return voucher

    def redeem_voucher(self, voucher: Voucher, partner_id: str) -> Transaction:
        now = self.clock()
        transaction_data = self.storage.transactions.get(voucher.transaction_id)
        if not transaction_data:
            raise TransactionNotFoundError(f"Transaction {voucher.transaction_id} not found")
        if transaction_data["partner_id"] != partner_id:
            raise PartnerMismatchError(
                f"Transaction {voucher.transaction_id} belongs to partner {transaction_data['partner_id']}"
            )
        if not Transaction(**transaction_data).can_complete():
            raise InvalidStateTransitionError(
                f"Cannot complete transaction in {transaction_data['status'].value} state"
            )

        # Expiry comes from the issued record, never from the presented copy.
        issued = self._issued_voucher(voucher)
        if issued is None:
            raise VoucherNotFoundError(f"No active voucher {voucher.code} for {voucher.transaction_id}")
        if issued.is_expired(now):
            self._drop_vouchers(voucher.transaction_id, expired_at=now)
            logger.info("voucher_expired", transaction_id=voucher.transaction_id,
                        expires_at=issued.expires_at.isoformat())
            raise VoucherExpiredError(
                f"Voucher for {voucher.transaction_id} expired at {issued.expires_at.isoformat()}"
            )

        transaction_data["status"] = TransactionStatus.COMPLETED
        transaction_data["redeemed_at"] = now
        transaction_data["updated_at"] = now
        self._drop_vouchers(voucher.transaction_id)
        self._persist()

        logger.info("voucher_redeemed", transaction_id=voucher.transaction_id, partner_id=partner_id,
                    points=transaction_data["points_used"])
        return Transaction(**transaction_data)

    def validate_qr(self, voucher: Voucher, partner_id: str) -> bool:
        try:
            self.redeem_voucher(voucher, partner_id)
        except WelfareStoreError as e:
            logger.warning("voucher_rejected", transaction_id=voucher.transaction_id,
                           partner_id=partner_id, error=e.code, detail=str(e))
            return False
        return True

    def list_active_vouchers(self) -> list[Voucher]:
        return [Voucher(**v) for v in self.storage.active_vouchers]

    # Transactions

    def get_transaction(self, transaction_id: str) -> Transaction:
        transaction_data = self.storage.transactions.get(transaction_id)
        if not transaction_data:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return Transaction(**transaction_data)

    def get_transactions_by_employee(self, employee_id: str) -> list[Transaction]:
        return [Transaction(**t) for t in self.storage.transactions.values() if t["employee_id"] == employee_id]

    def get_transactions_by_partner(self, partner_id: str) -> list[Transaction]:
        return [Transaction(**t) for t in self.storage.transactions.values() if t["partner_id"] == partner_id]

    def list_transactions(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        transactions = [Transaction(**t) for t in self.storage.transactions.values()]
        if filters.status:
            transactions = [t for t in transactions if t.status == filters.status]
        if filters.employee_id:
            transactions = [t for t in transactions if t.employee_id == filters.employee_id]
        if filters.partner_id:
            transactions = [t for t in transactions if t.partner_id == filters.partner_id]
        if filters.date_from:
            transactions = [t for t in transactions if t.created_at >= _aware(filters.date_from)]
        if filters.date_to:
            transactions = [t for t in transactions if t.created_at <= _aware(filters.date_to)]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    def _company_data(self, company_id: str) -> dict:
        company_data = self.storage.companies.get(company_id)
        if not company_data:
            raise CompanyNotFoundError(f"Company {company_id} not found")
        return company_data

    def _latest_pending(self, employee_id: str, service_id: str) -> Optional[dict]:
        pending = [
            t for t in self.storage.transactions.values()
            if t["employee_id"] == employee_id and t["service_id"] == service_id
            and t["status"] == TransactionStatus.PENDING
        ]
        return max(pending, key=lambda t: t["created_at"]) if pending else None

    def _issued_voucher(self, voucher: Voucher) -> Optional[Voucher]:
        for v in self.storage.active_vouchers:
            if (
                v["transaction_id"] == voucher.transaction_id
                and v["code"] == voucher.code
                and v["created_at"] == voucher.created_at
            ):
                return Voucher(**v)
        return None

    def _drop_vouchers(self, transaction_id: str, expired_at: Optional[datetime] = None) -> None:
        self.storage.active_vouchers = [
            v for v in self.storage.active_vouchers
            if v["transaction_id"] != transaction_id
            or (expired_at is not None and v["expires_at"] >= expired_at)
        ]

    def _persist(self) -> None:
        if self.snapshot:
            self.snapshot.save(self.storage.dump_state())
