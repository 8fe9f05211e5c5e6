"""
Record module definitions.

Each financial instrument and master-data collection follows the same
write workflows; a ModuleDefinition states which ones it enables and how its
codes, references and business checks work.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, FrozenSet, Callable, Dict, Any, Type
import logging

from core.financial_precision import safe_add, amounts_match, round_financial
from models import (
    RecordInput,
    BankInput, BrokerInput, OwnerInput, IssuerInput, RoleInput, UserInput,
    StockInput, PaymentStockInput, DividendStockInput,
    BondInput, DepositInput, SavingInput, InsuranceInput
)

logger = logging.getLogger(__name__)

CREATE = "create"
DRAFT = "draft"
UPDATE = "update"
UPDATE_DRAFT = "update_draft"
ARCHIVE = "archive"
RESTORE = "restore"
WITHDRAW = "withdraw"
EXTEND = "extend"
RECEIVE_INTEREST = "receive_interest"
RECEIVE_CASHBACK = "receive_cashback"
DELETE_INTEREST = "delete_interest"
DELETE_CASHBACK = "delete_cashback"
CREATE_COUPON = "create_coupon"

INTEREST_SCHEDULE = "interest_schedule"
CASHBACK_SCHEDULE = "cashback_schedule"
RECEIVED_COUPONS = "received_coupons"

# Schedule each receipt workflow writes to
SCHEDULE_WORKFLOWS = {
    RECEIVE_INTEREST: INTEREST_SCHEDULE,
    DELETE_INTEREST: INTEREST_SCHEDULE,
    RECEIVE_CASHBACK: CASHBACK_SCHEDULE,
    DELETE_CASHBACK: CASHBACK_SCHEDULE,
}

MASTER_WORKFLOWS = frozenset({CREATE, UPDATE, ARCHIVE, RESTORE})
DRAFTABLE_WORKFLOWS = frozenset({CREATE, DRAFT, UPDATE, UPDATE_DRAFT, ARCHIVE, RESTORE})
PLACEMENT_WORKFLOWS = DRAFTABLE_WORKFLOWS | {WITHDRAW, EXTEND}


class BusinessRuleError(Exception):
    """Raised by module checks when a payload breaks a business rule"""
    pass


def clear_rollover_schedule(data: Dict[str, Any]):
    """A rollover placement pays no interest schedule"""
    interest = data.get("interest")
    if isinstance(interest, dict) and interest.get("is_rollover"):
        data["interest_schedule"] = []


def check_interest_schedule(document: Dict[str, Any]):
    """Interest schedule total must equal the net interest amount"""
    interest = document.get("interest") or {}
    if interest.get("is_rollover"):
        return

    total = round_financial(safe_add(item.get("amount") for item in document.get("interest_schedule") or []))
    net_amount = interest.get("net_amount")
    if not amounts_match(total, net_amount):
        raise BusinessRuleError(
            f"Total interest schedule amount ({total}) does not match net amount ({net_amount})."
        )


@dataclass(frozen=True)
class ModuleDefinition:
    name: str
    path: str
    input_model: Type[RecordInput]
    workflows: FrozenSet[str]
    code_field: str = "form_number"
    date_field: Optional[str] = None
    name_field: Optional[str] = None
    unique_fields: Tuple[str, ...] = ()
    has_status: bool = True
    locked_statuses: Tuple[str, ...] = ("renewed", "withdrawn")
    schedule_fields: Tuple[str, ...] = ()
    # (url segment, schedule field) pairs listed across records
    listings: Tuple[Tuple[str, str], ...] = ()
    normalizers: Tuple[Callable[[Dict[str, Any]], None], ...] = ()
    checks: Tuple[Callable[[Dict[str, Any]], None], ...] = ()

    @property
    def collection(self) -> str:
        return self.name

    def permission(self, action: str) -> str:
        return f"{self.name}:{action}"

    def entity_ref(self, document: Dict[str, Any]) -> str:
        code = document.get(self.code_field) or ""
        if self.name_field:
            return f"[{code}] {document.get(self.name_field) or ''}"
        return str(code)

    def supports(self, workflow: str) -> bool:
        return workflow in self.workflows


def _master(
    name: str,
    path: str,
    input_model: Type[RecordInput],
    name_field: str = "name",
    unique_fields: Tuple[str, ...] = ("name",)
) -> ModuleDefinition:
    return ModuleDefinition(
        name=name,
        path=path,
        input_model=input_model,
        workflows=MASTER_WORKFLOWS,
        code_field="code",
        name_field=name_field,
        unique_fields=unique_fields,
        has_status=False,
        locked_statuses=()
    )


MODULES: Dict[str, ModuleDefinition] = {
    definition.name: definition
    for definition in [
        _master("banks", "banks", BankInput),
        _master("brokers", "brokers", BrokerInput),
        _master("owners", "owners", OwnerInput),
        _master("issuers", "issuers", IssuerInput),
        _master("roles", "roles", RoleInput),
        _master("users", "users", UserInput, name_field="username", unique_fields=("username", "email")),
        ModuleDefinition(
            name="stocks",
            path="stocks",
            input_model=StockInput,
            workflows=DRAFTABLE_WORKFLOWS,
            date_field="transaction_date",
            locked_statuses=("paid",)
        ),
        ModuleDefinition(
            name="payment_stocks",
            path="payment-stocks",
            input_model=PaymentStockInput,
            workflows=DRAFTABLE_WORKFLOWS,
            date_field="payment_date",
            schedule_fields=("transactions",)
        ),
        ModuleDefinition(
            name="dividend_stocks",
            path="dividend-stocks",
            input_model=DividendStockInput,
            workflows=DRAFTABLE_WORKFLOWS,
            date_field="dividend_date",
            schedule_fields=("transactions",)
        ),
        ModuleDefinition(
            name="bonds",
            path="bonds",
            input_model=BondInput,
            workflows=MASTER_WORKFLOWS | {CREATE_COUPON},
            date_field="transaction_date",
            schedule_fields=(RECEIVED_COUPONS,),
            listings=(("coupons", RECEIVED_COUPONS),)
        ),
        ModuleDefinition(
            name="deposits",
            path="deposits",
            input_model=DepositInput,
            workflows=PLACEMENT_WORKFLOWS | {RECEIVE_INTEREST, RECEIVE_CASHBACK, DELETE_INTEREST, DELETE_CASHBACK},
            date_field="placement.date",
            schedule_fields=(INTEREST_SCHEDULE, CASHBACK_SCHEDULE),
            listings=(("interests", INTEREST_SCHEDULE), ("cashbacks", CASHBACK_SCHEDULE)),
            normalizers=(clear_rollover_schedule,),
            checks=(check_interest_schedule,)
        ),
        ModuleDefinition(
            name="savings",
            path="savings",
            input_model=SavingInput,
            workflows=DRAFTABLE_WORKFLOWS | {WITHDRAW, RECEIVE_CASHBACK},
            date_field="placement.date",
            schedule_fields=(INTEREST_SCHEDULE, CASHBACK_SCHEDULE)
        ),
        ModuleDefinition(
            name="insurances",
            path="insurances",
            input_model=InsuranceInput,
            workflows=PLACEMENT_WORKFLOWS | {RECEIVE_INTEREST},
            date_field="placement.date",
            schedule_fields=(INTEREST_SCHEDULE, CASHBACK_SCHEDULE)
        ),
    ]
}


def get_module(name: str) -> ModuleDefinition:
    try:
        return MODULES[name]
    except KeyError:
        raise KeyError(f"Unknown record module: {name}")
