"""
Tests for the prison level balance reconciliation.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from models import (
    GeneralLedgerBalanceDetails,
    GeneralLedgerBalanceDetailsList,
    PrisonAccountBalanceDto,
    PrisonBalanceDto,
    PrisonBalanceVerdict,
)
from prison_balance import TELEMETRY_PREFIX, PrisonBalanceReconciliationService


def nomis_balance(prison_id, *accounts):
    return PrisonBalanceDto(
        prison_id=prison_id,
        account_balances=[
            PrisonAccountBalanceDto(account_code=code, balance=Decimal(balance))
            for code, balance in accounts
        ],
    )


def dps_balance(*accounts):
    return GeneralLedgerBalanceDetailsList(
        items=[
            GeneralLedgerBalanceDetails(account_code=code, balance=Decimal(balance))
            for code, balance in accounts
        ]
    )


def event_names(telemetry):
    return [c.args[0] for c in telemetry.track_event.call_args_list]


def events_named(telemetry, name):
    return [c.args[1] for c in telemetry.track_event.call_args_list if c.args[0] == name]


class TestPrisonBalanceReconciliation:
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
        return PrisonBalanceReconciliationService(telemetry, nomis_api, dps_api)

    @pytest.mark.asyncio
    async def test_matching_prison_has_no_mismatch(self, service, telemetry, nomis_api, dps_api):
        nomis_api.get_prison_balance.return_value = nomis_balance("MDI", (1, "10.00"), (2, "5.00"))
        dps_api.list_prison_accounts.return_value = dps_balance((2, "5.00"), (1, "10.00"))

        assert await service.check_prison_balance_match("MDI") is None
        telemetry.track_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_different_balance(self, service, telemetry, nomis_api, dps_api):
        nomis_api.get_prison_balance.return_value = nomis_balance("MDI", (1, "10.00"), (2, "5.00"))
        dps_api.list_prison_accounts.return_value = dps_balance((1, "10.00"), (2, "7.00"))

        mismatch = await service.check_prison_balance_match("MDI")

        assert mismatch.prison_id == "MDI"
        assert mismatch.verdict == PrisonBalanceVerdict.DIFFERENT_PRISON_ACCOUNT_BALANCE
        assert mismatch.missing_from_nomis == []
        assert mismatch.missing_from_dps == []
        [attributes] = events_named(telemetry, f"{TELEMETRY_PREFIX}-mismatch")
        assert attributes["reason"] == "different-prison-account-balance"
        assert attributes["prisonId"] == "MDI"

    @pytest.mark.asyncio
    async def test_different_number_of_accounts(self, service, nomis_api, dps_api):
        nomis_api.get_prison_balance.return_value = nomis_balance("MDI", (1, "10.00"))
        dps_api.list_prison_accounts.return_value = dps_balance((1, "10.00"), (3, "1.00"))

        mismatch = await service.check_prison_balance_match("MDI")

        assert mismatch.verdict == PrisonBalanceVerdict.DIFFERENT_NUMBER_OF_ACCOUNTS
        assert mismatch.nomis_account_count == 1
        assert mismatch.dps_account_count == 2
        assert mismatch.missing_from_nomis == [3]

    @pytest.mark.asyncio
    async def test_different_account_codes(self, service, nomis_api, dps_api):
        nomis_api.get_prison_balance.return_value = nomis_balance("MDI", (1, "10.00"), (4, "2.00"), (2, "1.00"))
        dps_api.list_prison_accounts.return_value = dps_balance((1, "10.00"), (3, "2.00"), (5, "1.00"))

        mismatch = await service.check_prison_balance_match("MDI")

        assert mismatch.verdict == PrisonBalanceVerdict.DIFFERENT_ACCOUNT_CODES
        assert mismatch.missing_from_nomis == [3, 5]
        assert mismatch.missing_from_dps == [2, 4]

    @pytest.mark.asyncio
    async def test_report_skips_failing_prison(self, service, telemetry, nomis_api, dps_api):
        balances = {
            "MDI": nomis_balance("MDI", (1, "10.00"), (2, "5.00")),
            "LEI": nomis_balance("LEI", (1, "3.00")),
        }

        async def get_prison_balance(prison_id):
            if prison_id == "BXI":
                raise RuntimeError("NOMIS unavailable")
            return balances[prison_id]

        async def list_prison_accounts(prison_id):
            if prison_id == "MDI":
                return dps_balance((1, "10.00"), (2, "7.00"))
            return dps_balance((1, "3.00"))

        nomis_api.get_prison_balance.side_effect = get_prison_balance
        dps_api.list_prison_accounts.side_effect = list_prison_accounts

        mismatches = await service.generate_reconciliation_report(["MDI", "BXI", "LEI"])

        assert [m.prison_id for m in mismatches] == ["MDI"]
        [error] = events_named(telemetry, f"{TELEMETRY_PREFIX}-mismatch-error")
        assert error["prisonId"] == "BXI"

    @pytest.mark.asyncio
    async def test_batch_reports_summary(self, service, telemetry, nomis_api, dps_api):
        nomis_api.get_prison_balance_ids.return_value = ["MDI"]
        nomis_api.get_prison_balance.return_value = nomis_balance("MDI", (1, "10.00"), (2, "5.00"))
        dps_api.list_prison_accounts.return_value = dps_balance((1, "10.00"), (2, "7.00"))

        mismatches = await service.generate_reconciliation_report_batch()

        assert len(mismatches) == 1
        assert event_names(telemetry)[0] == f"{TELEMETRY_PREFIX}-requested"
        [report] = events_named(telemetry, f"{TELEMETRY_PREFIX}-report")
        assert report == {"mismatch-count": 1, "success": "true"}

    @pytest.mark.asyncio
    async def test_batch_failure_is_reported_not_raised(self, service, telemetry, nomis_api):
        nomis_api.get_prison_balance_ids.return_value = ["MDI"]

        async def fail(*args, **kwargs):
            raise RuntimeError("unexpected")

        service.generate_reconciliation_report = fail

        assert await service.generate_reconciliation_report_batch() is None
        [report] = events_named(telemetry, f"{TELEMETRY_PREFIX}-report")
        assert report["success"] == "false"
