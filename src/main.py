"""
Prisoner Finance Reconciliation System - Main Entry Point

Runs the NOMIS/DPS finance reconciliation reports and the manual checks.
Handles CLI arguments, logging setup, and wires the API clients to the
reconciliation services.
"""

from __future__ import annotations
import argparse
import asyncio
import json
import sys
from datetime import date
from typing import Any, List, Optional
import logging
import structlog
from dotenv import load_dotenv
from pydantic import BaseModel


from api_clients import (
    ApiError,
    FinanceDpsApiClient,
    NomisApiClient,
    NotFoundError,
    TransactionMappingApiClient,
    create_http_client,
)
from models import Settings, default_transaction_date
from prison_balance import PrisonBalanceReconciliationService
from prison_transaction import PrisonTransactionReconciliationService
from prisoner_balance import PrisonerBalanceReconciliationService
from prisoner_transaction import PrisonerTransactionReconciliationService
from telemetry import MetricsCollector, TelemetryClient


load_dotenv()


logger = structlog.get_logger()


try:
    SETTINGS = Settings()
except Exception as e:
    logger.error(
        "Failed to load environment settings. Check your .env file.", error=str(e)
    )
    sys.exit(1)


REPORTS = ["prison-balance", "prisoner-balance", "prison-transaction", "prisoner-transaction"]

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOT_FOUND = 2


class ReconciliationSystem:
    """
    Owns the HTTP clients and the four reconciliation services.

    Use as an async context manager so the connection pools are closed when
    the run is over.
    """

    def __init__(
        self, settings: Settings = SETTINGS, telemetry: Optional[TelemetryClient] = None
    ) -> None:
        self.settings = settings
        self.telemetry = telemetry or TelemetryClient()
        retry_policy = settings.retry_policy()

        self._http_clients = [
            create_http_client(url, settings.API_TIMEOUT_SECONDS, settings.API_AUTH_TOKEN)
            for url in (
                settings.NOMIS_API_BASE_URL,
                settings.DPS_API_BASE_URL,
                settings.MAPPING_API_BASE_URL,
            )
        ]
        nomis_http, dps_http, mapping_http = self._http_clients
        self.nomis_api = NomisApiClient(nomis_http, retry_policy)
        self.dps_api = FinanceDpsApiClient(dps_http, retry_policy)
        self.mapping_api = TransactionMappingApiClient(mapping_http, retry_policy)

        self.prison_balance = PrisonBalanceReconciliationService(
            self.telemetry, self.nomis_api, self.dps_api
        )
        self.prisoner_balance = PrisonerBalanceReconciliationService(
            self.telemetry,
            self.nomis_api,
            self.dps_api,
            page_size=settings.PRISONER_BALANCE_PAGE_SIZE,
            prison_ids=settings.prisoner_balance_prison_ids,
        )
        self.prison_transaction = PrisonTransactionReconciliationService(
            self.telemetry,
            self.nomis_api,
            self.dps_api,
            self.mapping_api,
            page_size=settings.PRISON_TRANSACTION_PAGE_SIZE,
        )
        self.prisoner_transaction = PrisonerTransactionReconciliationService(
            self.telemetry,
            self.nomis_api,
            self.dps_api,
            self.mapping_api,
            page_size=settings.PRISONER_TRANSACTION_PAGE_SIZE,
        )

    async def __aenter__(self) -> "ReconciliationSystem":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        for client in self._http_clients:
            await client.aclose()

    async def run_report(self, report: str, report_date: Optional[date] = None) -> Any:
        """Run one scheduled report; None means the run failed."""
        logger.info("Starting reconciliation report", report=report)
        if report == "prison-balance":
            return await self.prison_balance.generate_reconciliation_report_batch()
        if report == "prisoner-balance":
            return await self.prisoner_balance.generate_prisoner_balance_reconciliation_report_batch()
        if report == "prison-transaction":
            return await self.prison_transaction.generate_reconciliation_report_batch(report_date)
        if report == "prisoner-transaction":
            await self.prisoner_transaction.generate_reconciliation_report_batch()
            return []
        raise ValueError(f"Unknown report {report}")

    async def run_check(
        self, check: str, target: str, report_date: Optional[date] = None
    ) -> Any:
        """Reconcile a single prison, prisoner or transaction on demand."""
        logger.info("Starting manual check", check=check, target=target)
        if check == "prison-balance":
            return await self.prison_balance.check_prison_balance_match(target)
        if check == "prisoner-balance":
            return await self.prisoner_balance.manual_check_prisoner_balance(int(target))
        if check == "prison-balance-prisoners":
            return await self.prisoner_balance.check_prisoner_balances_for_prison(target)
        if check == "prison-transactions":
            return await self.prison_transaction.check_transactions_match(
                target, report_date or default_transaction_date()
            )
        if check == "prison-transaction":
            return await self.prison_transaction.check_transaction_match(int(target))
        if check == "prisoner-transaction":
            return await self.prisoner_transaction.check_transaction_match(int(target))
        raise ValueError(f"Unknown check {check}")


def render_result(result: Any) -> str:
    """JSON text for a mismatch, a list of mismatches, or null."""
    if result is None:
        return "null"
    if isinstance(result, BaseModel):
        return result.model_dump_json(indent=2)
    if isinstance(result, list):
        return json.dumps(
            [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in result],
            indent=2,
        )
    return json.dumps(result, indent=2, default=str)


def setup_logging(level: str = "INFO") -> None:
    """
    Configure structured JSON logging for production observability.

    Sets up structlog with:
    - Timestamp formatting
    - Log level inclusion
    - Stack trace rendering
    - Exception info formatting
    - JSON output for log aggregation
    """
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Prisoner Finance Reconciliation System.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py report prison-balance
  python main.py report prison-transaction --date 2024-05-15
  python main.py check prisoner-balance 2609628
  python main.py check prison-transactions MDI --date 2024-05-15
        """,
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Expose Prometheus metrics on METRICS_PORT while running.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    report_parser = subparsers.add_parser("report", help="Run a full reconciliation report")
    report_parser.add_argument("report", choices=REPORTS)
    report_parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Transaction date (YYYY-MM-DD). Defaults to yesterday.",
    )

    check_parser = subparsers.add_parser("check", help="Reconcile a single record")
    check_parser.add_argument(
        "check",
        choices=[
            "prison-balance",
            "prisoner-balance",
            "prison-balance-prisoners",
            "prison-transactions",
            "prison-transaction",
            "prisoner-transaction",
        ],
    )
    check_parser.add_argument("target", help="Prison id, root offender id or transaction id")
    check_parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Transaction date for prison-transactions (YYYY-MM-DD). Defaults to yesterday.",
    )
    return parser


async def run(args: argparse.Namespace, settings: Settings = SETTINGS) -> int:
    async with ReconciliationSystem(settings) as system:
        if args.command == "report":
            result = await system.run_report(args.report, args.date)
            if result is None:
                logger.warning("Reconciliation report failed. Check logs.", report=args.report)
                return EXIT_FAILED
        else:
            try:
                result = await system.run_check(args.check, args.target, args.date)
            except NotFoundError as e:
                logger.error("Record not found", check=args.check, target=args.target, error=str(e))
                return EXIT_NOT_FOUND
            except (ApiError, ValueError) as e:
                logger.error("Manual check failed", check=args.check, target=args.target, error=str(e))
                return EXIT_FAILED

    print(render_result(result))
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging(SETTINGS.LOG_LEVEL)
    args = build_parser().parse_args(argv)

    if args.metrics:
        MetricsCollector(port=SETTINGS.METRICS_PORT).start_metrics_server()

    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
