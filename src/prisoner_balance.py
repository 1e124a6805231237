"""
Prisoner level balance reconciliation.

Pages through every prisoner with a NOMIS trust account and compares each
prisoner's accounts with those held by DPS using the difference engine.
"""

from __future__ import annotations

import json
import logging
from typing import List, Optional, Sequence

from api_clients import FinanceDpsApiClient, NomisApiClient
from comparison import compare_objects
from models import (
    AccountFields,
    BalanceFields,
    MismatchPrisonerBalance,
    ReconciliationErrorPageResult,
    ReconciliationPageResult,
    ReconciliationResult,
    ReconciliationSuccessPageResult,
)
from reconciliation_engine import check_page, generate_reconciliation_report
from telemetry import TelemetryClient, track_report

logger = logging.getLogger(__name__)

TELEMETRY_PRISONER_PREFIX = "prisoner-balance-reconciliation"


class PrisonerBalanceReconciliationService:
    def __init__(
        self,
        telemetry: TelemetryClient,
        nomis_api: NomisApiClient,
        dps_api: FinanceDpsApiClient,
        page_size: int = 10,
        prison_ids: Optional[Sequence[str]] = None,
    ) -> None:
        self.telemetry = telemetry
        self.nomis_api = nomis_api
        self.dps_api = dps_api
        self.page_size = page_size
        self.prison_ids = list(prison_ids or [])

    async def manual_check_prisoner_balance(
        self, root_offender_id: int
    ) -> Optional[MismatchPrisonerBalance]:
        return await self.check_prisoner_balance(root_offender_id)

    async def check_prisoner_balances_for_prison(
        self, prison_id: str
    ) -> List[MismatchPrisonerBalance]:
        """Re-run the check for every prisoner of one prison, bypassing the report."""
        root_offender_ids: List[int] = []
        page_number = 0
        while True:
            page = await self.nomis_api.get_root_offender_ids(
                [prison_id], page_number=page_number, page_size=self.page_size
            )
            root_offender_ids.extend(page.content)
            page_number += 1
            if page_number >= page.page.total_pages or not page.content:
                break

        logger.info(f"Checking {len(root_offender_ids)} prisoner balances for prison {prison_id}")
        mismatches: List[MismatchPrisonerBalance] = []
        for start in range(0, len(root_offender_ids), self.page_size):
            outcome = await check_page(
                root_offender_ids[start:start + self.page_size],
                self.check_prisoner_balance,
                self._track_check_error,
            )
            mismatches.extend(outcome.mismatches)
        return mismatches

    async def generate_prisoner_balance_reconciliation_report_batch(
        self,
    ) -> Optional[ReconciliationResult]:
        self.telemetry.track_event(
            f"{TELEMETRY_PRISONER_PREFIX}-requested",
            {"prisonIds": ",".join(self.prison_ids)} if self.prison_ids else {},
        )

        return await track_report(
            self.telemetry,
            TELEMETRY_PRISONER_PREFIX,
            self.generate_prisoner_balance_reconciliation_report,
            lambda result: {
                "balance-count": result.items_checked,
                "error-count": result.items_errored,
                "page-count": result.pages_checked,
                "page-error-count": result.pages_errored,
                "mismatch-count": len(result.mismatches),
            },
        )

    async def generate_prisoner_balance_reconciliation_report(self) -> ReconciliationResult:
        return await generate_reconciliation_report(
            page_size=self.page_size,
            check_match=self.check_prisoner_balance,
            next_page=self.get_prisoner_ids_for_page,
            on_error=self._track_check_error,
        )

    async def check_prisoner_balance(self, root_offender_id: int) -> Optional[MismatchPrisonerBalance]:
        nomis_response = await self.nomis_api.get_prisoner_account_details(root_offender_id)
        dps_response = await self.dps_api.list_prisoner_accounts(nomis_response.prison_number)

        nomis_fields = BalanceFields(
            prison_number=nomis_response.prison_number,
            accounts=[
                AccountFields(
                    prison_id=account.prison_id,
                    balance=account.balance,
                    hold_balance=account.hold_balance,
                    account_code=account.account_code,
                )
                for account in nomis_response.accounts
            ],
        )
        dps_fields = BalanceFields(
            prison_number=nomis_response.prison_number,
            accounts=[
                AccountFields(
                    prison_id=account.prison_id,
                    balance=account.balance,
                    hold_balance=account.hold_balance,
                    account_code=account.code,
                )
                for account in dps_response.items
            ],
        )

        differences = compare_objects(dps_fields, nomis_fields, "prisoner-balances")
        logger.debug(f"Compared {dps_fields} with {nomis_fields}: {differences}")

        if not differences:
            return None

        logger.info(
            "Differences: "
            + json.dumps([d.model_dump(mode="json") for d in differences])
        )
        self.telemetry.track_event(
            f"{TELEMETRY_PRISONER_PREFIX}-mismatch",
            {
                "rootOffenderId": root_offender_id,
                "prisonNumber": nomis_response.prison_number,
                "differences": ", ".join(d.property for d in differences),
            },
        )
        return MismatchPrisonerBalance(nomis=nomis_fields, dps=dps_fields, differences=differences)

    async def get_prisoner_ids_for_page(self, last_offender_id: int) -> ReconciliationPageResult:
        try:
            page = await self.nomis_api.get_prisoner_balance_identifiers_from_id(
                root_offender_id=last_offender_id,
                page_size=self.page_size,
                prison_ids=self.prison_ids,
            )
        except Exception as e:
            self.telemetry.track_event(
                f"{TELEMETRY_PRISONER_PREFIX}-mismatch-page-error",
                {"lastOffenderId": last_offender_id, "error": str(e)},
            )
            logger.error(
                f"Unable to match entire page of prisoners from offenderId: {last_offender_id}",
                exc_info=True,
            )
            return ReconciliationErrorPageResult(error=e)

        logger.info(
            f"Page requested from offenderId: {last_offender_id}, "
            f"with {len(page.root_offender_ids)} prisoners"
        )
        return ReconciliationSuccessPageResult(
            ids=page.root_offender_ids, last=page.last_offender_id
        )

    def _track_check_error(self, root_offender_id: int, error: Exception) -> None:
        self.telemetry.track_event(
            f"{TELEMETRY_PRISONER_PREFIX}-mismatch-error",
            {"rootOffenderId": root_offender_id, "error": str(error)},
        )
