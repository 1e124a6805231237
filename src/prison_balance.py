"""
Prison level balance reconciliation.

Compares each prison's general ledger account balances in NOMIS with the
prison accounts held by DPS. A prison yields at most one mismatch: the first
verdict reached (account count, account codes, then balances) is reported.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from api_clients import FinanceDpsApiClient, NomisApiClient
from comparison import find_missing, find_missing_by_equality
from models import AccountSummary, MismatchPrisonBalance, PrisonBalanceVerdict
from reconciliation_engine import check_page
from telemetry import TelemetryClient, track_report

logger = logging.getLogger(__name__)

TELEMETRY_PREFIX = "prison-balance-reports-reconciliation"


class PrisonBalanceReconciliationService:
    def __init__(
        self,
        telemetry: TelemetryClient,
        nomis_api: NomisApiClient,
        dps_api: FinanceDpsApiClient,
    ) -> None:
        self.telemetry = telemetry
        self.nomis_api = nomis_api
        self.dps_api = dps_api

    async def generate_reconciliation_report_batch(self) -> Optional[List[MismatchPrisonBalance]]:
        prison_ids = await self.nomis_api.get_prison_balance_ids()

        self.telemetry.track_event(
            f"{TELEMETRY_PREFIX}-requested",
            {"prisons": len(prison_ids)},
        )
        logger.info(f"Prison balance reconciliation report requested for {len(prison_ids)} prisons")

        return await track_report(
            self.telemetry,
            TELEMETRY_PREFIX,
            lambda: self.generate_reconciliation_report(prison_ids),
            lambda mismatches: {"mismatch-count": len(mismatches)},
        )

    async def generate_reconciliation_report(
        self, prison_ids: List[str]
    ) -> List[MismatchPrisonBalance]:
        """Check every prison at once; failed prisons are left out of the result."""
        outcome = await check_page(
            prison_ids, self.check_prison_balance_match, self._track_check_error
        )
        return outcome.mismatches

    async def check_prison_balance_match(self, prison_id: str) -> Optional[MismatchPrisonBalance]:
        nomis_balances = [
            AccountSummary.from_nomis(balance)
            for balance in (await self.nomis_api.get_prison_balance(prison_id)).account_balances
        ]
        dps_balances = [
            AccountSummary.from_dps(balance)
            for balance in (await self.dps_api.list_prison_accounts(prison_id)).items
        ]

        missing_from_nomis, missing_from_dps = find_missing(
            lambda summary: summary.account_code, nomis_balances, dps_balances
        )
        missing_from_nomis_codes = sorted(missing_from_nomis)
        missing_from_dps_codes = sorted(missing_from_dps)

        telemetry = {
            "prisonId": prison_id,
            "nomisAccountCount": len(nomis_balances),
            "dpsAccountCount": len(dps_balances),
            "missingFromNomis": missing_from_nomis_codes,
            "missingFromDps": missing_from_dps_codes,
        }

        def mismatch(verdict: PrisonBalanceVerdict, **extra) -> MismatchPrisonBalance:
            result = MismatchPrisonBalance(
                prison_id=prison_id,
                nomis_account_count=len(nomis_balances),
                dps_account_count=len(dps_balances),
                missing_from_nomis=missing_from_nomis_codes,
                missing_from_dps=missing_from_dps_codes,
                verdict=verdict,
            )
            logger.info(f"Prison balance mismatch {result}")
            self.telemetry.track_event(
                f"{TELEMETRY_PREFIX}-mismatch",
                {**telemetry, "reason": verdict.value, **extra},
            )
            return result

        if len(nomis_balances) != len(dps_balances):
            return mismatch(PrisonBalanceVerdict.DIFFERENT_NUMBER_OF_ACCOUNTS)

        if missing_from_nomis or missing_from_dps:
            return mismatch(PrisonBalanceVerdict.DIFFERENT_ACCOUNT_CODES)

        if find_missing_by_equality(nomis_balances, dps_balances):
            return mismatch(
                PrisonBalanceVerdict.DIFFERENT_PRISON_ACCOUNT_BALANCE,
                nomisPrisonBalances=[s.model_dump(mode="json") for s in nomis_balances],
                dpsPrisonBalances=[s.model_dump(mode="json") for s in dps_balances],
            )

        return None

    def _track_check_error(self, prison_id: str, error: Exception) -> None:
        self.telemetry.track_event(
            f"{TELEMETRY_PREFIX}-mismatch-error",
            {"prisonId": prison_id, "error": str(error)},
        )
