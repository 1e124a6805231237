"""
Prison (general ledger) transaction reconciliation.

For a prison and day, every NOMIS general ledger transaction is matched to its
DPS counterpart through the transaction mapping and compared field by field.
All differences of a transaction are collected into one mismatch.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from api_clients import (
    FinanceDpsApiClient,
    NomisApiClient,
    NotFoundError,
    TransactionMappingApiClient,
)
from comparison import find_missing_by_equality
from models import (
    GeneralLedgerTransactionDto,
    MismatchPrisonTransaction,
    TransactionSummary,
    default_transaction_date,
)
from reconciliation_engine import check_page
from telemetry import TelemetryClient, track_report

logger = logging.getLogger(__name__)

TELEMETRY_PREFIX = "prison-transaction-reports-reconciliation"


def group_by_transaction(
    rows: List[GeneralLedgerTransactionDto],
) -> List[List[GeneralLedgerTransactionDto]]:
    """Group entry rows by transaction id, keeping first-seen order."""
    groups: Dict[int, List[GeneralLedgerTransactionDto]] = {}
    for row in rows:
        groups.setdefault(row.transaction_id, []).append(row)
    return list(groups.values())


def append_difference(
    nomis_field: Any, dps_field: Any, differences: Dict[str, str], field_name: str
) -> None:
    if nomis_field != dps_field:
        differences[field_name] = f"nomis={nomis_field}, dps={dps_field}"


def _render_entries(entries) -> str:
    return "[" + ", ".join(
        f"{e.entry_sequence}:{e.account_code}:{e.posting_type}:{e.amount}" for e in entries
    ) + "]"


def compare_transactions(nomis: TransactionSummary, dps: TransactionSummary) -> Dict[str, str]:
    """
    Every difference between two general ledger transactions.

    Entries are only compared as sets when both sides have the same number.
    """
    differences: Dict[str, str] = {}

    append_difference(len(nomis.entries), len(dps.entries), differences, "transactionEntryCount")

    if not differences:
        nomis_only = find_missing_by_equality(nomis.entries, dps.entries)
        dps_only = find_missing_by_equality(dps.entries, nomis.entries)
        if nomis_only or dps_only:
            differences["entries"] = (
                f"nomisOnly={_render_entries(nomis_only)}, dpsOnly={_render_entries(dps_only)}"
            )

    append_difference(nomis.prison_id, dps.prison_id, differences, "prisonId")
    append_difference(nomis.description, dps.description, differences, "description")
    append_difference(nomis.transaction_type, dps.transaction_type, differences, "type")
    append_difference(nomis.reference, dps.reference, differences, "reference")
    append_difference(nomis.entry_date_time, dps.entry_date_time, differences, "entryDate")
    return differences


class PrisonTransactionReconciliationService:
    def __init__(
        self,
        telemetry: TelemetryClient,
        nomis_api: NomisApiClient,
        dps_api: FinanceDpsApiClient,
        mapping_api: TransactionMappingApiClient,
        page_size: int = 10,
    ) -> None:
        self.telemetry = telemetry
        self.nomis_api = nomis_api
        self.dps_api = dps_api
        self.mapping_api = mapping_api
        self.page_size = page_size

    async def generate_reconciliation_report_batch(
        self, entry_date: Optional[date] = None
    ) -> Optional[List[MismatchPrisonTransaction]]:
        prison_ids = [prison.id for prison in await self.nomis_api.get_active_prisons()]

        self.telemetry.track_event(
            f"{TELEMETRY_PREFIX}-requested",
            {"prisons": len(prison_ids)},
        )
        logger.info(f"Prison transaction reconciliation report requested for {len(prison_ids)} prisons")

        report_date = entry_date or default_transaction_date()
        return await track_report(
            self.telemetry,
            TELEMETRY_PREFIX,
            lambda: self.generate_reconciliation_report(prison_ids, report_date),
            lambda mismatches: {"mismatch-count": len(mismatches), "date": report_date.isoformat()},
        )

    async def generate_reconciliation_report(
        self, prison_ids: List[str], entry_date: date
    ) -> List[MismatchPrisonTransaction]:
        mismatches: List[MismatchPrisonTransaction] = []
        for start in range(0, len(prison_ids), self.page_size):
            outcome = await check_page(
                prison_ids[start:start + self.page_size],
                lambda prison_id: self.check_transactions_match(prison_id, entry_date),
                self._track_prison_error,
            )
            for prison_mismatches in outcome.mismatches:
                mismatches.extend(prison_mismatches)
        return mismatches

    async def check_transactions_match(
        self, prison_id: str, entry_date: date
    ) -> List[MismatchPrisonTransaction]:
        rows = await self.nomis_api.get_prison_transactions(prison_id, entry_date)
        groups = group_by_transaction(rows)
        logger.info(f"Checking {len(groups)} transactions for prison {prison_id} on {entry_date}")
        mismatches: List[MismatchPrisonTransaction] = []
        for start in range(0, len(groups), self.page_size):
            outcome = await check_page(
                groups[start:start + self.page_size],
                self.check_transaction_group,
                self._track_group_error,
            )
            mismatches.extend(outcome.mismatches)
        return mismatches

    async def check_transaction_match(self, nomis_transaction_id: int) -> Optional[MismatchPrisonTransaction]:
        rows = await self.nomis_api.get_prison_transaction(nomis_transaction_id)
        if not rows:
            raise NotFoundError(f"Transaction not found {nomis_transaction_id}")
        try:
            return await self.check_transaction_group(rows)
        except Exception as e:
            self._track_group_error(rows, e)
            raise

    async def check_transaction_group(
        self, rows: List[GeneralLedgerTransactionDto]
    ) -> Optional[MismatchPrisonTransaction]:
        nomis_transaction = TransactionSummary.from_nomis(rows)
        nomis_transaction_id = nomis_transaction.nomis_transaction_id

        mapping = await self.mapping_api.get_by_nomis_transaction_id_or_none(nomis_transaction_id)
        if mapping is None:
            logger.info(f"No mapping found for nomis transaction {nomis_transaction_id}")
            self.telemetry.track_event(
                f"{TELEMETRY_PREFIX}-mismatch-missing-mapping",
                {"nomisTransactionId": nomis_transaction_id},
            )
            return None

        dps_transaction = TransactionSummary.from_dps(
            await self.dps_api.get_general_ledger_transaction(mapping.dps_transaction_id)
        )

        differences = compare_transactions(nomis_transaction, dps_transaction)
        if not differences:
            return None

        mismatch = MismatchPrisonTransaction(
            nomis_transaction_id=nomis_transaction_id,
            dps_transaction_id=mapping.dps_transaction_id,
            differences=differences,
        )
        logger.info(f"Prison Transaction mismatch found {mismatch}")
        self.telemetry.track_event(
            f"{TELEMETRY_PREFIX}-mismatch",
            {
                "prisonId": nomis_transaction.prison_id,
                "nomisTransactionId": nomis_transaction_id,
                "dpsTransactionId": mapping.dps_transaction_id,
                "nomisTransactionEntryCount": len(nomis_transaction.entries),
                "dpsTransactionEntryCount": len(dps_transaction.entries),
                "differences": ", ".join(differences),
            },
        )
        return mismatch

    def _track_group_error(self, rows: List[GeneralLedgerTransactionDto], error: Exception) -> None:
        self.telemetry.track_event(
            f"{TELEMETRY_PREFIX}-mismatch-error",
            {"nomisTransactionId": rows[0].transaction_id, "error": str(error)},
        )

    def _track_prison_error(self, prison_id: str, error: Exception) -> None:
        self.telemetry.track_event(
            f"{TELEMETRY_PREFIX}-prison-error",
            {"prisonId": prison_id, "error": str(error)},
        )
