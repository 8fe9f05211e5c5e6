from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from core.code_generator import parse_reference_date


def check_iso_date(value: Optional[str]) -> Optional[str]:
    """Accept ISO-8601 dates and timestamps only"""
    if value is None:
        return value
    try:
        parse_reference_date(value)
    except ValueError:
        raise ValueError("must be an ISO-8601 date (YYYY-MM-DD)")
    return value

# ============================================
# COUNTER MODEL
# ============================================
class CounterPreview(BaseModel):
    name: str
    code: str

# ============================================
# AUDIT LOG MODEL
# ============================================
class AuditMetadata(BaseModel):
    ip: Optional[str] = None
    device: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    user_agent: Optional[str] = None

class AuditLogCreate(BaseModel):
    """Immutable audit entry, one per state-changing operation"""
    operation_id: str
    entity_type: str
    entity_id: str
    entity_ref: str
    actor_type: str = "user"
    actor_id: str
    actor_name: str
    action: str  # create, draft, update, archive, restore, withdraw, extend, receive_*, ...
    module: str
    system_reason: str
    user_reason: Optional[str] = None
    changes: Dict[str, Any]
    metadata: AuditMetadata = Field(default_factory=AuditMetadata)
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    model_config = ConfigDict(frozen=True)

# ============================================
# WRITE RESULTS
# ============================================
class CreateResult(BaseModel):
    inserted_id: str
    code: str

class UpdateResult(BaseModel):
    matched_count: int
    modified_count: int

class ExtendResult(BaseModel):
    inserted_id: str
    code: str
    renewed_id: str

# ============================================
# SHARED RECORD INPUT
# ============================================
class RecordInput(BaseModel):
    """Base for write payloads; unset fields count as not supplied"""
    model_config = ConfigDict(extra="forbid")

    notes: Optional[str] = None
    update_reason: Optional[str] = None  # audit only, never stored on the record

class ReasonInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = None

# ============================================
# MASTER DATA
# ============================================
class BankAccount(BaseModel):
    uuid: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None

class BankInput(RecordInput):
    name: Optional[str] = None
    branch: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    accounts: Optional[List[BankAccount]] = None

class BrokerInput(RecordInput):
    name: Optional[str] = None
    branch: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None

class OwnerInput(RecordInput):
    name: Optional[str] = None

class IssuerInput(RecordInput):
    name: Optional[str] = None

class RoleInput(RecordInput):
    name: Optional[str] = None
    permissions: Optional[List[str]] = None

class UserInput(RecordInput):
    """User master data; credentials are managed elsewhere"""
    username: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    role_id: Optional[str] = None
    active_status: Optional[bool] = None

# ============================================
# STOCKS
# ============================================
class StockLine(BaseModel):
    issuer_id: Optional[str] = None
    lots: Optional[float] = None
    shares: Optional[float] = None
    price: Optional[float] = None
    total: Optional[float] = None

class StockInput(RecordInput):
    transaction_date: Optional[str] = None
    settlement_date: Optional[str] = None
    broker_id: Optional[str] = None
    owner_id: Optional[str] = None
    transaction_number: Optional[str] = None
    buying_list: Optional[List[StockLine]] = None
    selling_list: Optional[List[StockLine]] = None
    buying_total: Optional[float] = None
    buying_brokerage_fee: Optional[float] = None
    buying_vat: Optional[float] = None
    buying_levy: Optional[float] = None
    buying_kpei: Optional[float] = None
    buying_stamp: Optional[float] = None
    buying_proceed: Optional[float] = None
    selling_total: Optional[float] = None
    selling_brokerage_fee: Optional[float] = None
    selling_vat: Optional[float] = None
    selling_levy: Optional[float] = None
    selling_kpei: Optional[float] = None
    selling_stamp: Optional[float] = None
    selling_proceed: Optional[float] = None
    proceed_amount: Optional[float] = None

    @field_validator("transaction_date", "settlement_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class PaymentStockTransaction(BaseModel):
    uuid: Optional[str] = None
    stock_id: Optional[str] = None
    date: Optional[str] = None
    transaction_number: Optional[str] = None
    amount: Optional[float] = None

    @field_validator("date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class PaymentStockInput(RecordInput):
    broker_id: Optional[str] = None
    payment_date: Optional[str] = None
    transactions: Optional[List[PaymentStockTransaction]] = None
    total: Optional[float] = None

    @field_validator("payment_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class DividendTransaction(BaseModel):
    uuid: Optional[str] = None
    issuer_id: Optional[str] = None
    owner_id: Optional[str] = None
    dividend_date: Optional[str] = None
    shares: Optional[float] = None
    dividend_amount: Optional[float] = None
    total_dividend: Optional[float] = None
    received_amount: Optional[float] = None

    @field_validator("dividend_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class DividendStockInput(RecordInput):
    broker_id: Optional[str] = None
    bank_id: Optional[str] = None
    bank_account_uuid: Optional[str] = None
    dividend_date: Optional[str] = None
    transactions: Optional[List[DividendTransaction]] = None
    total_received: Optional[float] = None

    @field_validator("dividend_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

# ============================================
# BONDS
# ============================================
class ReceivedCoupon(BaseModel):
    uuid: Optional[str] = None
    date: Optional[str] = None
    amount: Optional[float] = None
    received_date: Optional[str] = None
    received_amount: Optional[float] = None
    bank_id: Optional[str] = None
    bank_account_uuid: Optional[str] = None

    @field_validator("date", "received_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class BondInput(RecordInput):
    product: Optional[str] = None
    publisher: Optional[str] = None
    type: Optional[str] = None
    series: Optional[str] = None
    year_issued: Optional[str] = None
    bank_source_id: Optional[str] = None
    bank_source_account_uuid: Optional[str] = None
    bank_placement_id: Optional[str] = None
    bank_placement_account_uuid: Optional[str] = None
    owner_id: Optional[str] = None
    base_date: Optional[int] = None
    transaction_date: Optional[str] = None
    settlement_date: Optional[str] = None
    maturity_date: Optional[str] = None
    transaction_number: Optional[float] = None
    price: Optional[float] = None
    principal_amount: Optional[float] = None
    proceed_amount: Optional[float] = None
    accrued_interest: Optional[float] = None
    total_proceed: Optional[float] = None
    coupon_tenor: Optional[float] = None
    coupon_rate: Optional[float] = None
    coupon_gross_amount: Optional[float] = None
    coupon_tax_rate: Optional[float] = None
    coupon_tax_amount: Optional[float] = None
    coupon_net_amount: Optional[float] = None
    coupon_date: Optional[str] = None
    received_coupons: Optional[List[ReceivedCoupon]] = None

    @field_validator("transaction_date", "settlement_date", "maturity_date", "coupon_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class CouponsInput(BaseModel):
    """Full replacement of a bond's received coupons"""
    model_config = ConfigDict(extra="forbid")

    received_coupons: List[ReceivedCoupon]
    update_reason: Optional[str] = None

# ============================================
# DEPOSITS / SAVINGS / INSURANCES
# ============================================
class Placement(BaseModel):
    bank_id: Optional[str] = None
    bilyet_number: Optional[str] = None
    base_date: Optional[int] = None
    date: Optional[str] = None
    term: Optional[int] = None
    maturity_date: Optional[str] = None
    amount: Optional[float] = None

    @field_validator("date", "maturity_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class BankSource(BaseModel):
    bank_id: Optional[str] = None
    bank_account_uuid: Optional[str] = None

class Interest(BaseModel):
    payment_method: Optional[str] = None
    rate: Optional[float] = None
    gross_amount: Optional[float] = None
    tax_rate: Optional[float] = None
    tax_amount: Optional[float] = None
    net_amount: Optional[float] = None
    bank_id: Optional[str] = None
    bank_account_uuid: Optional[str] = None
    is_rollover: Optional[bool] = None

class InterestScheduleItem(BaseModel):
    uuid: Optional[str] = None
    term: Optional[int] = None
    payment_date: Optional[str] = None
    amount: Optional[float] = None

    @field_validator("payment_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class CashbackScheduleItem(BaseModel):
    uuid: Optional[str] = None
    payment_date: Optional[str] = None
    rate: Optional[float] = None
    amount: Optional[float] = None

    @field_validator("payment_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class PlacementRecordInput(RecordInput):
    owner_id: Optional[str] = None
    group_id: Optional[str] = None
    placement: Optional[Placement] = None
    source: Optional[BankSource] = None
    interest: Optional[Interest] = None
    interest_schedule: Optional[List[InterestScheduleItem]] = None
    cashback: Optional[BankSource] = None
    cashback_schedule: Optional[List[CashbackScheduleItem]] = None

class DepositInput(PlacementRecordInput):
    pass

class SavingInput(PlacementRecordInput):
    pass

class InsuranceInput(PlacementRecordInput):
    product: Optional[str] = None
    policy_number: Optional[str] = None

class WithdrawalInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: float = Field(..., ge=0)
    bank_id: Optional[str] = None
    bank_account_uuid: Optional[str] = None
    received_date: Optional[str] = None
    received_amount: float = Field(default=0, ge=0)
    notes: Optional[str] = None

    @field_validator("received_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

# ============================================
# SCHEDULE RECEIPTS
# ============================================
class ReceiptInput(BaseModel):
    """Payment received against one interest or cashback schedule item"""
    model_config = ConfigDict(extra="forbid")

    uuid: str
    received_date: str
    received_amount: float = Field(..., ge=0)
    bank_id: str
    bank_account_uuid: str
    additional_bank_id: Optional[str] = None
    additional_bank_account_uuid: Optional[str] = None
    received_additional_payment_date: Optional[str] = None
    received_additional_payment_amount: float = Field(default=0, ge=0)
    update_reason: Optional[str] = None

    @field_validator("received_date", "received_additional_payment_date")
    @classmethod
    def _validate_dates(cls, value):
        return check_iso_date(value)

class ScheduleItemInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    uuid: str
    reason: Optional[str] = None
