from __future__ import annotations

import asyncio
import logging
import random
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter

from models import (
    GeneralLedgerBalanceDetailsList,
    GeneralLedgerTransactionDto,
    OffenderTransactionDto,
    PrisonBalanceDto,
    PrisonDto,
    PrisonerAccountDetailsList,
    PrisonerBalanceDto,
    RetryPolicy,
    RootOffenderIdPage,
    RootOffenderIdsWithLast,
    SyncGeneralLedgerTransactionResponse,
    SyncOffenderTransactionResponse,
    TransactionMappingDto,
)
from telemetry import metrics

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ApiError(Exception):
    """A collaborator API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ApiError):
    """The requested record does not exist in the called system."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404)


class RetryExhaustedError(ApiError):
    """Transport failures persisted beyond the retry policy."""


def create_http_client(
    base_url: str, timeout: float = 30.0, auth_token: Optional[str] = None
) -> httpx.AsyncClient:
    headers = {"Accept": "application/json"}
    if auth_token:
        headers["Authorization"] = f"Bearer {auth_token}"
    return httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, headers=headers)


class ApiClient:
    """
    Async JSON client shared by the NOMIS, DPS and mapping clients.

    Transport failures (timeouts, refused connections) are retried with
    exponential backoff and jitter as set by the injected RetryPolicy. HTTP
    error responses are not retried: a 404 becomes NotFoundError and any other
    error status becomes ApiError.
    """

    api_name = "api"

    def __init__(self, http_client: httpx.AsyncClient, retry_policy: RetryPolicy) -> None:
        self.http_client = http_client
        self.retry_policy = retry_policy

    async def _request_with_retry(
        self, url: str, params: Optional[Dict[str, Any]] = None, retry: bool = True
    ) -> httpx.Response:
        attempts = self.retry_policy.max_attempts if retry else 1
        for attempt in range(1, attempts + 1):
            try:
                response = await self.http_client.get(url, params=params)
            except httpx.TransportError as e:
                metrics.record_api_request(self.api_name, "transport_error")
                if attempt < attempts:
                    wait_time = self.retry_policy.delay_seconds(attempt, random.random())  # nosec B311
                    logger.warning(
                        f"{self.api_name}: request error (attempt {attempt}/{attempts}): "
                        f"{e!r}. Retrying in {wait_time:.2f}s... URL: {url}"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                logger.error(f"{self.api_name}: all {attempts} attempts failed for: {url}")
                raise RetryExhaustedError(
                    f"{self.api_name} request to {url} failed after {attempts} attempts: {e!r}"
                ) from e

            metrics.record_api_request(self.api_name, str(response.status_code))
            if response.status_code == httpx.codes.NOT_FOUND:
                raise NotFoundError(f"{self.api_name}: {url} not found")
            if response.is_error:
                raise ApiError(
                    f"{self.api_name}: {url} returned {response.status_code}",
                    status_code=response.status_code,
                )
            return response

        raise RetryExhaustedError(f"{self.api_name} request to {url} was never attempted")

    async def _get(
        self,
        url: str,
        response_type: Any,
        params: Optional[Dict[str, Any]] = None,
        retry: bool = True,
    ) -> Any:
        response = await self._request_with_retry(url, params=params, retry=retry)
        return TypeAdapter(response_type).validate_python(response.json())

    async def _get_or_none(
        self,
        url: str,
        response_type: Type[ModelT],
        params: Optional[Dict[str, Any]] = None,
        retry: bool = True,
    ) -> Optional[ModelT]:
        try:
            return await self._get(url, response_type, params=params, retry=retry)
        except NotFoundError:
            return None


class NomisApiClient(ApiClient):
    """Finance, prison and transaction endpoints of the NOMIS API."""

    api_name = "NomisApiClient"

    async def get_active_prisons(self) -> List[PrisonDto]:
        return await self._get("/prisons/active", List[PrisonDto])

    async def get_prison_balance_ids(self) -> List[str]:
        return await self._get("/finance/prison/ids", List[str])

    async def get_prison_balance(self, prison_id: str) -> PrisonBalanceDto:
        return await self._get(f"/finance/prison/{prison_id}/balance", PrisonBalanceDto)

    async def get_prisoner_balance_identifiers_from_id(
        self,
        root_offender_id: int,
        page_size: int,
        prison_ids: Optional[Sequence[str]] = None,
    ) -> RootOffenderIdsWithLast:
        params: Dict[str, Any] = {"rootOffenderId": root_offender_id, "pageSize": page_size}
        if prison_ids:
            params["prisonId"] = list(prison_ids)
        return await self._get(
            "/finance/prisoners/ids/all-from-id", RootOffenderIdsWithLast, params=params
        )

    async def get_root_offender_ids(
        self, prison_ids: Optional[Sequence[str]], page_number: int, page_size: int
    ) -> RootOffenderIdPage:
        params: Dict[str, Any] = {"page": page_number, "size": page_size}
        if prison_ids:
            params["prisonId"] = list(prison_ids)
        return await self._get("/finance/prisoners/ids", RootOffenderIdPage, params=params)

    async def get_prisoner_account_details(self, root_offender_id: int) -> PrisonerBalanceDto:
        return await self._get(
            f"/finance/prisoners/{root_offender_id}/balance", PrisonerBalanceDto
        )

    async def get_prison_transactions(
        self, prison_id: str, entry_date: date
    ) -> List[GeneralLedgerTransactionDto]:
        return await self._get(
            f"/transactions/prison/{prison_id}",
            List[GeneralLedgerTransactionDto],
            params={"date": entry_date.isoformat()},
        )

    # returns an empty list if it does not exist
    async def get_prison_transaction(self, transaction_id: int) -> List[GeneralLedgerTransactionDto]:
        return await self._get(
            f"/transactions/prison/transaction/{transaction_id}",
            List[GeneralLedgerTransactionDto],
            retry=False,
        )

    # returns an empty list if it does not exist
    async def get_prisoner_transaction(self, transaction_id: int) -> List[OffenderTransactionDto]:
        return await self._get(
            f"/transactions/{transaction_id}", List[OffenderTransactionDto], retry=False
        )


class FinanceDpsApiClient(ApiClient):
    """Account and sync endpoints of the DPS finance API."""

    api_name = "FinanceDpsApiClient"

    async def list_prison_accounts(self, prison_id: str) -> GeneralLedgerBalanceDetailsList:
        return await self._get(f"/prisons/{prison_id}/accounts", GeneralLedgerBalanceDetailsList)

    async def list_prisoner_accounts(self, prison_number: str) -> PrisonerAccountDetailsList:
        return await self._get(
            f"/prisoners/{prison_number}/accounts", PrisonerAccountDetailsList
        )

    async def get_general_ledger_transaction(
        self, transaction_id: str
    ) -> SyncGeneralLedgerTransactionResponse:
        return await self._get(
            f"/sync/general-ledger-transactions/{transaction_id}",
            SyncGeneralLedgerTransactionResponse,
        )

    async def get_offender_transaction_or_none(
        self, transaction_id: str
    ) -> Optional[SyncOffenderTransactionResponse]:
        return await self._get_or_none(
            f"/sync/offender-transactions/{transaction_id}", SyncOffenderTransactionResponse
        )


class TransactionMappingApiClient(ApiClient):
    """Lookups of the NOMIS to DPS transaction id mapping."""

    api_name = "TransactionMappingApiClient"

    async def get_by_nomis_transaction_id_or_none(
        self, nomis_transaction_id: int
    ) -> Optional[TransactionMappingDto]:
        return await self._get_or_none(
            f"/mapping/transactions/nomis-transaction-id/{nomis_transaction_id}",
            TransactionMappingDto,
        )
