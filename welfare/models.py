from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, computed_field, field_validator


class ServiceCategory(str, Enum):
    FITNESS = "fitness"
    WELLNESS = "wellness"
    HEALTH = "health"
    NUTRITION = "nutrition"
    EDUCATION = "education"
    LIFESTYLE = "lifestyle"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    # Modelled but not produced by any store operation.
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Company(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    total_credits: int = 0
    used_credits: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def available_credits(self) -> int:
        return self.total_credits - self.used_credits


class Employee(BaseModel):
    id: str
    company_id: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    available_points: int = 0
    used_points: int = 0
    total_points: int = 0
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Service(BaseModel):
    id: str
    partner_id: str
    name: str
    description: str = ""
    category: ServiceCategory
    points_required: int
    original_price: Optional[float] = None
    discount_percentage: Optional[float] = None
    max_redemptions: Optional[int] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: str
    employee_id: str
    service_id: str
    partner_id: str
    company_id: str
    points_used: int
    status: TransactionStatus
    voucher_code: str
    redeemed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_complete(self) -> bool:
        return self.status == TransactionStatus.PENDING


class Voucher(BaseModel):
    transaction_id: str
    employee_id: str
    service_id: str
    points_to_redeem: int
    code: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at if self.expires_at.tzinfo else self.expires_at.replace(tzinfo=timezone.utc)
        return now > expires_at


class PointDistribution(BaseModel):
    employee_id: str
    points: int = Field(..., gt=0, description="Points to move from company credits to the employee")


class DistributionRequest(BaseModel):
    distributions: list[PointDistribution]

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "distributions": [
                {"employee_id": "emp_1", "points": 250},
                {"employee_id": "emp_2", "points": 250},
            ]
        }
    })


class AddCreditsRequest(BaseModel):
    amount: int = Field(..., gt=0)


class EmployeeCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: str
    phone: Optional[str] = None
    is_active: bool = True


class EmployeeUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("first_name", "last_name", "email", "is_active")
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not set to null")
        return value


class ServiceCreate(BaseModel):
    partner_id: str
    name: str = Field(..., min_length=1)
    description: str = Field(default="", max_length=500)
    category: ServiceCategory
    points_required: int = Field(..., gt=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    max_redemptions: Optional[int] = Field(None, gt=0)
    is_active: bool = True


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[ServiceCategory] = None
    points_required: Optional[int] = Field(None, gt=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount_percentage: Optional[float] = Field(None, ge=0, le=100)
    max_redemptions: Optional[int] = Field(None, gt=0)
    is_active: Optional[bool] = None


class ServiceFilters(BaseModel):
    category: Optional[ServiceCategory] = None
    min_points: Optional[int] = None
    max_points: Optional[int] = None
    search_term: Optional[str] = None
    active_only: bool = False


class TransactionFilters(BaseModel):
    status: Optional[TransactionStatus] = None
    employee_id: Optional[str] = None
    partner_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class BookingRequest(BaseModel):
    employee_id: str
    service_id: str


class VoucherRequest(BaseModel):
    employee_id: str
    service_id: str
    transaction_id: Optional[str] = None


class ValidateVoucherRequest(BaseModel):
    voucher: Voucher
    partner_id: str


class BookingResponse(BaseModel):
    transaction: Transaction
    employee: Employee
    message: str


class RedemptionResponse(BaseModel):
    transaction: Transaction
    message: str


class EmployeeSummary(BaseModel):
    employee: Employee
    recent_transactions: list[Transaction]
    pending_count: int
    completed_count: int


class CompanySummary(BaseModel):
    company: Company
    active_employees: int
    total_transactions: int
    points_redeemed: int
    points_pending: int


class StoreState(BaseModel):
    """The part of the store that survives a restart."""
    companies: list[Company] = Field(default_factory=list)
    employees: list[Employee] = Field(default_factory=list)
    services: list[Service] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)
