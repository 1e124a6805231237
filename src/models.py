"""
models.py

Defines all core data models for the Prisoner Finance Reconciliation System.
Models are built using Pydantic for validation, immutability, and serialization.
They cover configuration, the payloads returned by the NOMIS, DPS and mapping
APIs, the normalised comparison shapes, and the mismatch records that make up
a reconciliation report.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

M = TypeVar("M")
T = TypeVar("T")

TWO_PLACES = Decimal("0.01")


def round_amount(amount: Decimal) -> Decimal:
    """Scale a monetary amount to 2 decimal places, rounding half-up."""
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def effective_hold_balance(hold_balance: Optional[Decimal]) -> Decimal:
    """NOMIS omits a zero hold balance, so an absent value counts as zero."""
    return Decimal("0") if hold_balance is None else hold_balance


# -----------------------------------------------------------------------------
# 1. System Configuration Model
# -----------------------------------------------------------------------------
class RetryPolicy(BaseModel):
    """
    Exponential backoff policy handed to every API client.

    Built once from Settings; each client tags its retries with its own name.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Total attempts per call")
    backoff_millis: int = Field(default=200, ge=0, description="First retry delay")
    max_backoff_millis: int = Field(default=5000, ge=0, description="Delay ceiling")
    jitter: float = Field(default=0.5, ge=0, le=1, description="Jitter fraction")

    def delay_seconds(self, attempt: int, rand: float = 0.0) -> float:
        """Delay before retry number `attempt` (1-based), `rand` in [0, 1)."""
        base = min(self.backoff_millis * 2 ** (attempt - 1), self.max_backoff_millis)
        return base * (1 + self.jitter * rand) / 1000


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables or .env files.

    Centralizes API endpoints, retry behaviour, page sizes and logging.
    """

    # API Configuration
    NOMIS_API_BASE_URL: str = Field(
        default="http://localhost:8081", description="Base URL for the NOMIS API"
    )
    DPS_API_BASE_URL: str = Field(
        default="http://localhost:8082", description="Base URL for the DPS finance API"
    )
    MAPPING_API_BASE_URL: str = Field(
        default="http://localhost:8083", description="Base URL for the mapping API"
    )
    API_AUTH_TOKEN: Optional[str] = Field(
        None, description="Bearer token sent to all APIs"
    )
    API_TIMEOUT_SECONDS: float = Field(default=30.0, description="HTTP timeout")

    # Retry Configuration
    RETRY_MAX_ATTEMPTS: int = Field(default=3, description="Attempts per API call")
    RETRY_BACKOFF_MILLIS: int = Field(default=200, description="Initial backoff")
    RETRY_MAX_BACKOFF_MILLIS: int = Field(default=5000, description="Backoff ceiling")
    RETRY_JITTER: float = Field(default=0.5, description="Backoff jitter fraction")

    # Report Configuration
    PRISONER_BALANCE_PAGE_SIZE: int = Field(default=10, description="Prisoners per page")
    PRISONER_BALANCE_PRISON_FILTER: str = Field(
        default="", description="Comma separated prison ids to restrict prisoners to"
    )
    PRISON_TRANSACTION_PAGE_SIZE: int = Field(
        default=10, description="Prisons reconciled concurrently"
    )
    PRISONER_TRANSACTION_PAGE_SIZE: int = Field(
        default=20, description="Prisoner transactions per page"
    )

    # Application Configuration
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    METRICS_PORT: int = Field(default=8000, description="Prometheus metrics port")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def prisoner_balance_prison_ids(self) -> List[str]:
        """Prison filter as a list, empty when no filter is configured."""
        return [
            prison_id.strip()
            for prison_id in self.PRISONER_BALANCE_PRISON_FILTER.split(",")
            if prison_id.strip()
        ]

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.RETRY_MAX_ATTEMPTS,
            backoff_millis=self.RETRY_BACKOFF_MILLIS,
            max_backoff_millis=self.RETRY_MAX_BACKOFF_MILLIS,
            jitter=self.RETRY_JITTER,
        )


# -----------------------------------------------------------------------------
# 2. API Payload Models
# -----------------------------------------------------------------------------
class ApiModel(BaseModel):
    """Base for API payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


# NOMIS
class PrisonDto(ApiModel):
    id: str
    description: Optional[str] = None


class PrisonAccountBalanceDto(ApiModel):
    account_code: int
    balance: Decimal
    transaction_date: Optional[datetime] = None


class PrisonBalanceDto(ApiModel):
    prison_id: str
    account_balances: List[PrisonAccountBalanceDto] = Field(default_factory=list)


class PrisonerAccountDto(ApiModel):
    prison_id: str
    last_transaction_id: Optional[int] = None
    account_code: int
    balance: Decimal
    hold_balance: Optional[Decimal] = None


class PrisonerBalanceDto(ApiModel):
    root_offender_id: int
    prison_number: str
    accounts: List[PrisonerAccountDto] = Field(default_factory=list)


class RootOffenderIdsWithLast(ApiModel):
    root_offender_ids: List[int] = Field(default_factory=list)
    last_offender_id: int = 0


class PageMetadata(ApiModel):
    size: int
    number: int
    total_elements: int
    total_pages: int


class RootOffenderIdPage(ApiModel):
    content: List[int] = Field(default_factory=list)
    page: PageMetadata


class GeneralLedgerTransactionDto(ApiModel):
    transaction_id: int
    general_ledger_entry_sequence: int
    caseload_id: str
    amount: Decimal
    type: str
    posting_type: str
    account_code: int
    description: Optional[str] = None
    transaction_timestamp: datetime
    reference: Optional[str] = None


class OffenderTransactionDto(ApiModel):
    transaction_id: int
    transaction_entry_sequence: int
    offender_no: str
    caseload_id: str
    amount: Decimal
    type: str
    posting_type: str
    sub_account_type: str
    description: Optional[str] = None
    reference: Optional[str] = None
    created_at: datetime
    general_ledger_transactions: List[GeneralLedgerTransactionDto] = Field(
        default_factory=list
    )


# DPS
class GeneralLedgerBalanceDetails(ApiModel):
    account_code: int
    balance: Decimal


class GeneralLedgerBalanceDetailsList(ApiModel):
    items: List[GeneralLedgerBalanceDetails] = Field(default_factory=list)


class PrisonerAccountDetails(ApiModel):
    code: int
    prison_id: str
    name: Optional[str] = None
    balance: Decimal
    hold_balance: Optional[Decimal] = None


class PrisonerAccountDetailsList(ApiModel):
    items: List[PrisonerAccountDetails] = Field(default_factory=list)


class GeneralLedgerEntry(ApiModel):
    entry_sequence: int
    code: int
    posting_type: str
    amount: Decimal


class SyncGeneralLedgerTransactionResponse(ApiModel):
    synchronized_transaction_id: str
    legacy_transaction_id: Optional[int] = None
    caseload_id: str
    description: Optional[str] = None
    reference: Optional[str] = None
    transaction_type: str
    transaction_timestamp: datetime
    general_ledger_entries: List[GeneralLedgerEntry] = Field(default_factory=list)


class OffenderTransaction(ApiModel):
    entry_sequence: int
    offender_number: Optional[str] = None
    sub_account_type: str
    posting_type: str
    amount: Decimal
    general_ledger_entries: List[GeneralLedgerEntry] = Field(default_factory=list)


class SyncOffenderTransactionResponse(ApiModel):
    synchronized_transaction_id: str
    legacy_transaction_id: Optional[int] = None
    caseload_id: str
    transaction_timestamp: datetime
    transactions: List[OffenderTransaction] = Field(default_factory=list)


# Mapping
class TransactionMappingDto(ApiModel):
    nomis_transaction_id: int
    dps_transaction_id: str
    mapping_type: Optional[str] = None


# -----------------------------------------------------------------------------
# 3. Comparison Models
# -----------------------------------------------------------------------------
class Difference(BaseModel):
    """One field-level discrepancy, addressed by a dotted (and indexed) path."""

    model_config = ConfigDict(frozen=True)

    property: str = Field(..., description="Path of the differing value")
    dps: Any = Field(None, description="Value held by DPS")
    nomis: Any = Field(None, description="Value held by NOMIS")
    id: Optional[str] = Field(None, description="Identifier of the owning record")


class AccountSummary(BaseModel):
    """One prison ledger account balance."""

    model_config = ConfigDict(frozen=True)

    account_code: int
    balance: Decimal

    @classmethod
    def from_nomis(cls, dto: PrisonAccountBalanceDto) -> "AccountSummary":
        return cls(account_code=dto.account_code, balance=dto.balance)

    @classmethod
    def from_dps(cls, dto: GeneralLedgerBalanceDetails) -> "AccountSummary":
        return cls(account_code=dto.account_code, balance=dto.balance)


class AccountFields(BaseModel):
    """One account entry within a prisoner's balance."""

    model_config = ConfigDict(frozen=True)

    prison_id: str
    balance: Decimal
    hold_balance: Optional[Decimal] = None
    account_code: int

    def sort_key(self) -> Tuple[str, int, Decimal, Decimal]:
        return (
            self.prison_id,
            self.account_code,
            self.balance,
            effective_hold_balance(self.hold_balance),
        )


class BalanceFields(BaseModel):
    """A prisoner's full balance picture from one system."""

    model_config = ConfigDict(frozen=True)

    prison_number: str
    accounts: List[AccountFields] = Field(default_factory=list)


class TransactionEntry(BaseModel):
    """One general ledger entry, amount held at 2 decimal places."""

    model_config = ConfigDict(frozen=True)

    account_code: int
    posting_type: str
    amount: Decimal
    entry_sequence: int

    @classmethod
    def from_nomis(cls, dto: GeneralLedgerTransactionDto) -> "TransactionEntry":
        return cls(
            account_code=dto.account_code,
            posting_type=dto.posting_type,
            amount=round_amount(dto.amount),
            entry_sequence=dto.general_ledger_entry_sequence,
        )

    @classmethod
    def from_dps(cls, entry: GeneralLedgerEntry) -> "TransactionEntry":
        return cls(
            account_code=entry.code,
            posting_type=entry.posting_type,
            amount=round_amount(entry.amount),
            entry_sequence=entry.entry_sequence,
        )


class TransactionSummary(BaseModel):
    """Normalised view of a general ledger transaction from either system."""

    model_config = ConfigDict(frozen=True)

    prison_id: str
    nomis_transaction_id: int
    description: Optional[str] = None
    transaction_type: str
    reference: Optional[str] = None
    entry_date_time: datetime
    entries: List[TransactionEntry] = Field(default_factory=list)

    @classmethod
    def from_nomis(cls, rows: List[GeneralLedgerTransactionDto]) -> "TransactionSummary":
        """The first row supplies the header; every row becomes an entry."""
        if not rows:
            raise ValueError("A transaction needs at least one entry row")
        first = rows[0]
        return cls(
            nomis_transaction_id=first.transaction_id,
            prison_id=first.caseload_id,
            description=first.description,
            transaction_type=first.type,
            reference=first.reference,
            entry_date_time=first.transaction_timestamp,
            entries=[TransactionEntry.from_nomis(row) for row in rows],
        )

    @classmethod
    def from_dps(
        cls, response: SyncGeneralLedgerTransactionResponse
    ) -> "TransactionSummary":
        if response.legacy_transaction_id is None:
            raise ValueError(
                f"DPS transaction {response.synchronized_transaction_id} "
                "has no legacy transaction id"
            )
        return cls(
            nomis_transaction_id=response.legacy_transaction_id,
            prison_id=response.caseload_id,
            description=response.description,
            transaction_type=response.transaction_type,
            reference=response.reference,
            entry_date_time=response.transaction_timestamp,
            entries=[TransactionEntry.from_dps(e) for e in response.general_ledger_entries],
        )


class PrisonerTransactionEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    sub_account_type: str
    posting_type: str
    amount: Decimal
    prison_entries: List[TransactionEntry] = Field(default_factory=list)

    @classmethod
    def from_nomis(cls, dto: OffenderTransactionDto) -> "PrisonerTransactionEntry":
        return cls(
            sub_account_type=dto.sub_account_type,
            posting_type=dto.posting_type,
            amount=round_amount(dto.amount),
            prison_entries=[
                TransactionEntry.from_nomis(gl) for gl in dto.general_ledger_transactions
            ],
        )

    @classmethod
    def from_dps(cls, transaction: OffenderTransaction) -> "PrisonerTransactionEntry":
        return cls(
            sub_account_type=transaction.sub_account_type,
            posting_type=transaction.posting_type,
            amount=round_amount(transaction.amount),
            prison_entries=[
                TransactionEntry.from_dps(gl) for gl in transaction.general_ledger_entries
            ],
        )


class PrisonerTransactionSummary(BaseModel):
    """Normalised view of an offender transaction, compared as a whole."""

    model_config = ConfigDict(frozen=True)

    prison_id: str
    nomis_transaction_id: int
    entry_date_time: datetime
    entries: List[PrisonerTransactionEntry] = Field(default_factory=list)

    @classmethod
    def from_nomis(
        cls, rows: List[OffenderTransactionDto]
    ) -> "PrisonerTransactionSummary":
        if not rows:
            raise ValueError("A transaction needs at least one entry row")
        first = rows[0]
        return cls(
            nomis_transaction_id=first.transaction_id,
            prison_id=first.caseload_id,
            entry_date_time=first.created_at,
            entries=[PrisonerTransactionEntry.from_nomis(row) for row in rows],
        )

    @classmethod
    def from_dps(
        cls, response: SyncOffenderTransactionResponse
    ) -> "PrisonerTransactionSummary":
        if response.legacy_transaction_id is None:
            raise ValueError(
                f"DPS transaction {response.synchronized_transaction_id} "
                "has no legacy transaction id"
            )
        return cls(
            nomis_transaction_id=response.legacy_transaction_id,
            prison_id=response.caseload_id,
            entry_date_time=response.transaction_timestamp,
            entries=[PrisonerTransactionEntry.from_dps(t) for t in response.transactions],
        )


# -----------------------------------------------------------------------------
# 4. Mismatch Models
# -----------------------------------------------------------------------------
class PrisonBalanceVerdict(str, Enum):
    DIFFERENT_NUMBER_OF_ACCOUNTS = "different-number-of-accounts"
    DIFFERENT_ACCOUNT_CODES = "different-account-codes"
    DIFFERENT_PRISON_ACCOUNT_BALANCE = "different-prison-account-balance"


class MismatchPrisonBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    prison_id: str
    nomis_account_count: int
    dps_account_count: int
    missing_from_nomis: List[int] = Field(default_factory=list)
    missing_from_dps: List[int] = Field(default_factory=list)
    verdict: PrisonBalanceVerdict


class MismatchPrisonerBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    nomis: BalanceFields
    dps: BalanceFields
    differences: List[Difference] = Field(default_factory=list)


class MismatchPrisonTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    nomis_transaction_id: int
    dps_transaction_id: str
    differences: Dict[str, str] = Field(default_factory=dict)


class MismatchPrisonerTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    nomis_transaction_id: int
    dps_transaction_id: Optional[str] = None


# -----------------------------------------------------------------------------
# 5. Reconciliation Run Models
# -----------------------------------------------------------------------------
class ReconciliationResult(BaseModel, Generic[M]):
    """
    Aggregate output of a paged reconciliation run.

    `items_checked` excludes items whose check raised; those are counted in
    `items_errored`. Mismatch order follows completion order within a page.
    """

    mismatches: List[M] = Field(default_factory=list)
    items_checked: int = 0
    items_errored: int = 0
    pages_checked: int = 0
    pages_errored: int = 0


class ReconciliationSuccessPageResult(BaseModel, Generic[T]):
    model_config = ConfigDict(frozen=True)

    ids: List[T] = Field(default_factory=list)
    last: int = Field(..., description="Cursor to request the following page from")
    end_of_data: bool = False


class ReconciliationErrorPageResult(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    error: Exception


ReconciliationPageResult = Union[ReconciliationSuccessPageResult, ReconciliationErrorPageResult]


class NoMapping(BaseModel):
    model_config = ConfigDict(frozen=True)


class NoDpsTransaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_id: str


class DpsTransactionFound(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction: SyncOffenderTransactionResponse


DpsTransactionResult = Union[NoMapping, NoDpsTransaction, DpsTransactionFound]


def default_transaction_date(today: Optional[date] = None) -> date:
    """Transaction reports cover the previous day unless told otherwise."""
    return (today or date.today()) - timedelta(days=1)
