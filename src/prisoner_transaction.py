"""
Prisoner (offender) transaction reconciliation.

Checks a single NOMIS offender transaction against DPS. The NOMIS rows and the
DPS side (mapping, then transaction) are fetched concurrently; the DPS outcome
decides which kind of mismatch, if any, is reported.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from api_clients import (
    FinanceDpsApiClient,
    NomisApiClient,
    NotFoundError,
    TransactionMappingApiClient,
)
from models import (
    DpsTransactionFound,
    DpsTransactionResult,
    MismatchPrisonerTransaction,
    NoDpsTransaction,
    NoMapping,
    OffenderTransactionDto,
    PrisonerTransactionSummary,
)
from telemetry import TelemetryClient

logger = logging.getLogger(__name__)

TELEMETRY_PRISONER_PREFIX = "prisoner-transactions-reconciliation"


class PrisonerTransactionReconciliationService:
    def __init__(
        self,
        telemetry: TelemetryClient,
        nomis_api: NomisApiClient,
        dps_api: FinanceDpsApiClient,
        mapping_api: TransactionMappingApiClient,
        page_size: int = 20,
    ) -> None:
        self.telemetry = telemetry
        self.nomis_api = nomis_api
        self.dps_api = dps_api
        self.mapping_api = mapping_api
        self.page_size = page_size

    async def generate_reconciliation_report_batch(self) -> None:
        # TODO: page through NOMIS offender transaction ids once DPS holds the full history
        logger.warning("Prisoner transactions reconciliation report is not implemented yet")
        self.telemetry.track_event(f"{TELEMETRY_PRISONER_PREFIX}-not-implemented", {})

    async def check_transaction_match(
        self, nomis_transaction_id: int
    ) -> Optional[MismatchPrisonerTransaction]:
        """
        Reconcile one NOMIS offender transaction with DPS.

        A transaction NOMIS does not know raises NotFoundError. Any other
        failure is telemetered and yields no mismatch.
        """
        try:
            return await self._check_transaction_match(nomis_transaction_id)
        except NotFoundError as e:
            self._track_error(nomis_transaction_id, e)
            raise
        except Exception as e:
            logger.error(
                f"Unable to check prisoner transaction {nomis_transaction_id}: {e}",
                exc_info=True,
            )
            self._track_error(nomis_transaction_id, e)
            return None

    def _track_error(self, nomis_transaction_id: int, error: Exception) -> None:
        self.telemetry.track_event(
            f"{TELEMETRY_PRISONER_PREFIX}-mismatch-error",
            {"nomisTransactionId": nomis_transaction_id, "error": str(error)},
        )

    async def _get_nomis_transaction(self, nomis_transaction_id: int) -> List[OffenderTransactionDto]:
        rows = await self.nomis_api.get_prisoner_transaction(nomis_transaction_id)
        if not rows:
            raise NotFoundError(f"Prisoner transaction {nomis_transaction_id} not found")
        return rows

    async def _get_dps_transaction(self, nomis_transaction_id: int) -> DpsTransactionResult:
        mapping = await self.mapping_api.get_by_nomis_transaction_id_or_none(nomis_transaction_id)
        if mapping is None:
            return NoMapping()
        dps_transaction = await self.dps_api.get_offender_transaction_or_none(
            mapping.dps_transaction_id
        )
        if dps_transaction is None:
            return NoDpsTransaction(transaction_id=mapping.dps_transaction_id)
        return DpsTransactionFound(transaction=dps_transaction)

    async def _check_transaction_match(
        self, nomis_transaction_id: int
    ) -> Optional[MismatchPrisonerTransaction]:
        # let both fetches settle so neither outlives the check
        nomis_transaction, dps_result = await asyncio.gather(
            self._get_nomis_transaction(nomis_transaction_id),
            self._get_dps_transaction(nomis_transaction_id),
            return_exceptions=True,
        )
        for outcome in (nomis_transaction, dps_result):
            if isinstance(outcome, BaseException):
                raise outcome
        offender_no = nomis_transaction[0].offender_no

        if isinstance(dps_result, NoMapping):
            self._track_mismatch(
                "transaction-mapping-missing",
                {"nomisTransactionId": nomis_transaction_id, "offenderNo": offender_no},
            )
            return MismatchPrisonerTransaction(nomis_transaction_id=nomis_transaction_id)

        if isinstance(dps_result, NoDpsTransaction):
            self._track_mismatch(
                "dps-transaction-missing",
                {
                    "nomisTransactionId": nomis_transaction_id,
                    "dpsTransactionId": dps_result.transaction_id,
                    "offenderNo": offender_no,
                },
            )
            return MismatchPrisonerTransaction(
                nomis_transaction_id=nomis_transaction_id,
                dps_transaction_id=dps_result.transaction_id,
            )

        if isinstance(dps_result, DpsTransactionFound):
            dps_transaction = dps_result.transaction
            nomis_summary = PrisonerTransactionSummary.from_nomis(nomis_transaction)
            dps_summary = PrisonerTransactionSummary.from_dps(dps_transaction)
            if nomis_summary == dps_summary:
                return None

            logger.info(f"Mismatch found for transaction: {nomis_summary} {dps_summary}")
            self._track_mismatch(
                "transaction-different-details",
                {
                    "nomisTransactionId": nomis_transaction_id,
                    "dpsTransactionId": dps_transaction.synchronized_transaction_id,
                    "offenderNo": offender_no,
                },
            )
            return MismatchPrisonerTransaction(
                nomis_transaction_id=nomis_transaction_id,
                dps_transaction_id=dps_transaction.synchronized_transaction_id,
            )

        raise TypeError(f"Unexpected DPS transaction result {type(dps_result).__name__}")

    def _track_mismatch(self, reason: str, attributes: dict) -> None:
        self.telemetry.track_event(
            f"{TELEMETRY_PRISONER_PREFIX}-{reason}",
            {**attributes, "reason": reason},
        )
