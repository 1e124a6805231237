"""
Tests for the prisoner level balance reconciliation.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from models import (
    PageMetadata,
    PrisonerAccountDetails,
    PrisonerAccountDetailsList,
    PrisonerAccountDto,
    PrisonerBalanceDto,
    ReconciliationErrorPageResult,
    ReconciliationSuccessPageResult,
    RootOffenderIdPage,
    RootOffenderIdsWithLast,
)
from prisoner_balance import TELEMETRY_PRISONER_PREFIX, PrisonerBalanceReconciliationService


def nomis_prisoner(root_offender_id, prison_number, *accounts):
    return PrisonerBalanceDto(
        root_offender_id=root_offender_id,
        prison_number=prison_number,
        accounts=[
            PrisonerAccountDto(
                prison_id="MDI",
                account_code=code,
                balance=Decimal(balance),
                hold_balance=None if hold is None else Decimal(hold),
            )
            for code, balance, hold in accounts
        ],
    )


def dps_prisoner(*accounts):
    return PrisonerAccountDetailsList(
        items=[
            PrisonerAccountDetails(
                code=code,
                prison_id="MDI",
                balance=Decimal(balance),
                hold_balance=Decimal(hold),
            )
            for code, balance, hold in accounts
        ]
    )


def events_named(telemetry, name):
    return [c.args[1] for c in telemetry.track_event.call_args_list if c.args[0] == name]


class TestPrisonerBalanceReconciliation:
    @pytest.fixture
    def telemetry(self):
        return MagicMock()

    @pytest.fixture
    def nomis_api(self):
        return AsyncMock()

    @pytest.fixture
    def dps_api(self):
        return AsyncMock()

    @pytest.fixture
    def service(self, telemetry, nomis_api, dps_api):
        return PrisonerBalanceReconciliationService(
            telemetry, nomis_api, dps_api, page_size=10, prison_ids=["MDI"]
        )

    @pytest.mark.asyncio
    async def test_matching_prisoner(self, service, telemetry, nomis_api, dps_api):
        nomis_api.get_prisoner_account_details.return_value = nomis_prisoner(
            1, "A1234AA", (2101, "10.00", None), (2102, "5.00", "1.00")
        )
        dps_api.list_prisoner_accounts.return_value = dps_prisoner(
            (2102, "5.00", "1.00"), (2101, "10.00", "0")
        )

        assert await service.check_prisoner_balance(1) is None
        dps_api.list_prisoner_accounts.assert_awaited_once_with("A1234AA")
        telemetry.track_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_balance_difference(self, service, telemetry, nomis_api, dps_api):
        nomis_api.get_prisoner_account_details.return_value = nomis_prisoner(
            1, "A1234AA", (2101, "10.00", None)
        )
        dps_api.list_prisoner_accounts.return_value = dps_prisoner((2101, "12.00", "0"))

        mismatch = await service.manual_check_prisoner_balance(1)

        assert [d.property for d in mismatch.differences] == [
            "prisoner-balances.accounts[0].balance"
        ]
        assert mismatch.nomis.prison_number == "A1234AA"
        [event] = events_named(telemetry, f"{TELEMETRY_PRISONER_PREFIX}-mismatch")
        assert event["rootOffenderId"] == 1
        assert event["differences"] == "prisoner-balances.accounts[0].balance"

    @pytest.mark.asyncio
    async def test_missing_account_in_dps(self, service, nomis_api, dps_api):
        nomis_api.get_prisoner_account_details.return_value = nomis_prisoner(
            1, "A1234AA", (2101, "10.00", None), (2102, "0.00", None)
        )
        dps_api.list_prisoner_accounts.return_value = dps_prisoner((2101, "10.00", "0"))

        mismatch = await service.check_prisoner_balance(1)

        assert len(mismatch.differences) == 1
        assert mismatch.differences[0].property == "prisoner-balances.accounts"
        assert mismatch.differences[0].nomis == 2
        assert mismatch.differences[0].dps == 1

    @pytest.mark.asyncio
    async def test_page_result(self, service, nomis_api):
        nomis_api.get_prisoner_balance_identifiers_from_id.return_value = RootOffenderIdsWithLast(
            root_offender_ids=[4, 5, 6], last_offender_id=6
        )

        page = await service.get_prisoner_ids_for_page(3)

        assert page == ReconciliationSuccessPageResult(ids=[4, 5, 6], last=6)
        nomis_api.get_prisoner_balance_identifiers_from_id.assert_awaited_once_with(
            root_offender_id=3, page_size=10, prison_ids=["MDI"]
        )

    @pytest.mark.asyncio
    async def test_page_error_is_tracked(self, service, telemetry, nomis_api):
        nomis_api.get_prisoner_balance_identifiers_from_id.side_effect = RuntimeError("down")

        page = await service.get_prisoner_ids_for_page(30)

        assert isinstance(page, ReconciliationErrorPageResult)
        [event] = events_named(telemetry, f"{TELEMETRY_PRISONER_PREFIX}-mismatch-page-error")
        assert event["lastOffenderId"] == 30

    @pytest.mark.asyncio
    async def test_batch_summary_counts(self, service, telemetry, nomis_api, dps_api):
        population = list(range(1, 35))

        async def next_ids(root_offender_id, page_size, prison_ids):
            ids = [i for i in population if i > root_offender_id][:page_size]
            return RootOffenderIdsWithLast(root_offender_ids=ids, last_offender_id=ids[-1] if ids else 0)

        async def details(root_offender_id):
            if root_offender_id == 13:
                raise RuntimeError("bad record")
            return nomis_prisoner(root_offender_id, f"A{root_offender_id:04d}AA", (2101, "1.00", None))

        async def dps_accounts(prison_number):
            balance = "2.00" if prison_number == "A0020AA" else "1.00"
            return dps_prisoner((2101, balance, "0"))

        nomis_api.get_prisoner_balance_identifiers_from_id.side_effect = next_ids
        nomis_api.get_prisoner_account_details.side_effect = details
        dps_api.list_prisoner_accounts.side_effect = dps_accounts

        result = await service.generate_prisoner_balance_reconciliation_report_batch()

        assert result.items_checked == 33
        assert result.items_errored == 1
        assert result.pages_checked == 4
        assert len(result.mismatches) == 1
        [report] = events_named(telemetry, f"{TELEMETRY_PRISONER_PREFIX}-report")
        assert report == {
            "balance-count": 33,
            "error-count": 1,
            "page-count": 4,
            "page-error-count": 0,
            "mismatch-count": 1,
            "success": "true",
        }
        [error] = events_named(telemetry, f"{TELEMETRY_PRISONER_PREFIX}-mismatch-error")
        assert error["rootOffenderId"] == 13

    @pytest.mark.asyncio
    async def test_check_prisoners_for_prison(self, service, nomis_api, dps_api):
        nomis_api.get_root_offender_ids.side_effect = [
            RootOffenderIdPage(
                content=list(range(1, 11)),
                page=PageMetadata(size=10, number=0, total_elements=12, total_pages=2),
            ),
            RootOffenderIdPage(
                content=[11, 12],
                page=PageMetadata(size=10, number=1, total_elements=12, total_pages=2),
            ),
        ]
        nomis_api.get_prisoner_account_details.side_effect = lambda root_offender_id: nomis_prisoner(
            root_offender_id, "A1234AA", (2101, "1.00", None)
        )
        dps_api.list_prisoner_accounts.return_value = dps_prisoner((2101, "1.00", "0.50"))

        mismatches = await service.check_prisoner_balances_for_prison("MDI")

        assert len(mismatches) == 12
        assert nomis_api.get_root_offender_ids.await_count == 2
        assert all(
            m.differences[0].property == "prisoner-balances.accounts[0].hold_balance"
            for m in mismatches
        )
