"""
Tests for the prisoner (offender) transaction reconciliation.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from api_clients import ApiError, NotFoundError
from models import (
    GeneralLedgerEntry,
    GeneralLedgerTransactionDto,
    MismatchPrisonerTransaction,
    OffenderTransaction,
    OffenderTransactionDto,
    SyncOffenderTransactionResponse,
    TransactionMappingDto,
)
from prisoner_transaction import (
    TELEMETRY_PRISONER_PREFIX,
    PrisonerTransactionReconciliationService,
)

TIMESTAMP = datetime(2024, 5, 15, 9, 0)


def nomis_rows(transaction_id=500, amount="4.50"):
    return [
        OffenderTransactionDto(
            transaction_id=transaction_id,
            transaction_entry_sequence=1,
            offender_no="A1234AA",
            caseload_id="MDI",
            amount=Decimal(amount),
            type="CANT",
            posting_type="DR",
            sub_account_type="SPND",
            created_at=TIMESTAMP,
            general_ledger_transactions=[
                GeneralLedgerTransactionDto(
                    transaction_id=transaction_id,
                    general_ledger_entry_sequence=1,
                    caseload_id="MDI",
                    amount=Decimal(amount),
                    type="CANT",
                    posting_type="DR",
                    account_code=2102,
                    transaction_timestamp=TIMESTAMP,
                )
            ],
        )
    ]


def dps_offender_transaction(legacy_id=500, amount="4.50"):
    return SyncOffenderTransactionResponse(
        synchronized_transaction_id="dps-500",
        legacy_transaction_id=legacy_id,
        caseload_id="MDI",
        transaction_timestamp=TIMESTAMP,
        transactions=[
            OffenderTransaction(
                entry_sequence=1,
                offender_number="A1234AA",
                sub_account_type="SPND",
                posting_type="DR",
                amount=Decimal(amount),
                general_ledger_entries=[
                    GeneralLedgerEntry(entry_sequence=1, code=2102, posting_type="DR", amount=Decimal(amount))
                ],
            )
        ],
    )


def event_names(telemetry):
    return [c.args[0] for c in telemetry.track_event.call_args_list]


class TestPrisonerTransactionReconciliation:
    @pytest.fixture
    def telemetry(self):
        return MagicMock()

    @pytest.fixture
    def nomis_api(self):
        api = AsyncMock()
        api.get_prisoner_transaction.return_value = nomis_rows()
        return api

    @pytest.fixture
    def dps_api(self):
        return AsyncMock()

    @pytest.fixture
    def mapping_api(self):
        api = AsyncMock()
        api.get_by_nomis_transaction_id_or_none.return_value = TransactionMappingDto(
            nomis_transaction_id=500, dps_transaction_id="dps-500"
        )
        return api

    @pytest.fixture
    def service(self, telemetry, nomis_api, dps_api, mapping_api):
        return PrisonerTransactionReconciliationService(telemetry, nomis_api, dps_api, mapping_api)

    @pytest.mark.asyncio
    async def test_matching_transaction(self, service, telemetry, dps_api):
        dps_api.get_offender_transaction_or_none.return_value = dps_offender_transaction()

        assert await service.check_transaction_match(500) is None
        dps_api.get_offender_transaction_or_none.assert_awaited_once_with("dps-500")
        telemetry.track_event.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_mapping(self, service, telemetry, dps_api, mapping_api):
        mapping_api.get_by_nomis_transaction_id_or_none.return_value = None

        mismatch = await service.check_transaction_match(500)

        assert mismatch == MismatchPrisonerTransaction(nomis_transaction_id=500)
        dps_api.get_offender_transaction_or_none.assert_not_called()
        [name] = event_names(telemetry)
        assert "mapping" in name
        assert "details" not in name
        attributes = telemetry.track_event.call_args.args[1]
        assert attributes["offenderNo"] == "A1234AA"
        assert attributes["reason"] == "transaction-mapping-missing"

    @pytest.mark.asyncio
    async def test_missing_dps_transaction(self, service, telemetry, dps_api):
        dps_api.get_offender_transaction_or_none.return_value = None

        mismatch = await service.check_transaction_match(500)

        assert mismatch == MismatchPrisonerTransaction(
            nomis_transaction_id=500, dps_transaction_id="dps-500"
        )
        assert event_names(telemetry) == [f"{TELEMETRY_PRISONER_PREFIX}-dps-transaction-missing"]

    @pytest.mark.asyncio
    async def test_different_details(self, service, telemetry, dps_api):
        dps_api.get_offender_transaction_or_none.return_value = dps_offender_transaction(amount="4.60")

        mismatch = await service.check_transaction_match(500)

        assert mismatch.dps_transaction_id == "dps-500"
        assert event_names(telemetry) == [
            f"{TELEMETRY_PRISONER_PREFIX}-transaction-different-details"
        ]

    @pytest.mark.asyncio
    async def test_unknown_nomis_transaction(self, service, telemetry, nomis_api, dps_api):
        nomis_api.get_prisoner_transaction.return_value = []
        dps_api.get_offender_transaction_or_none.return_value = dps_offender_transaction()

        with pytest.raises(NotFoundError):
            await service.check_transaction_match(500)
        assert event_names(telemetry) == [f"{TELEMETRY_PRISONER_PREFIX}-mismatch-error"]

    @pytest.mark.asyncio
    async def test_batch_is_not_implemented_yet(self, service, telemetry, nomis_api):
        await service.generate_reconciliation_report_batch()

        assert event_names(telemetry) == [f"{TELEMETRY_PRISONER_PREFIX}-not-implemented"]
        nomis_api.get_prisoner_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_mapping_failure_yields_no_mismatch(self, service, telemetry, dps_api, mapping_api):
        mapping_api.get_by_nomis_transaction_id_or_none.side_effect = ApiError("mapping 500", 500)

        assert await service.check_transaction_match(500) is None
        dps_api.get_offender_transaction_or_none.assert_not_called()
        assert event_names(telemetry) == [f"{TELEMETRY_PRISONER_PREFIX}-mismatch-error"]
        assert telemetry.track_event.call_args.args[1]["error"] == "mapping 500"

    @pytest.mark.asyncio
    async def test_dps_failure_yields_no_mismatch(self, service, telemetry, dps_api):
        dps_api.get_offender_transaction_or_none.side_effect = ApiError("dps 503", 503)

        assert await service.check_transaction_match(500) is None
        assert event_names(telemetry) == [f"{TELEMETRY_PRISONER_PREFIX}-mismatch-error"]

    @pytest.mark.asyncio
    async def test_nomis_fetch_settles_when_mapping_fails(self, service, nomis_api, mapping_api):
        finished = []

        async def slow_nomis_fetch(transaction_id):
            await asyncio.sleep(0.05)
            finished.append("nomis")
            return nomis_rows(transaction_id)

        nomis_api.get_prisoner_transaction.side_effect = slow_nomis_fetch
        mapping_api.get_by_nomis_transaction_id_or_none.side_effect = ApiError("mapping 500", 500)

        assert await service.check_transaction_match(500) is None
        assert finished == ["nomis"]
