"""
Paged reconciliation driver.

Walks a population of identifiers page by page, checking every identifier of
a page concurrently and only moving to the next page once the current one is
done. Failed item checks and failed page fetches are counted and skipped; only
a failure to fetch the very first page fails the run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

from models import (
    ReconciliationErrorPageResult,
    ReconciliationPageResult,
    ReconciliationResult,
    ReconciliationSuccessPageResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M")

# Give up on a run after this many failed page fetches
MAX_PAGE_ERRORS = 30

CheckMatch = Callable[[T], Awaitable[Optional[M]]]
OnError = Callable[[T, Exception], None]


class PageOutcome(BaseModel, Generic[M]):
    """Results of checking one page of identifiers."""

    mismatches: List[M] = Field(default_factory=list)
    items_checked: int = 0
    items_errored: int = 0


async def check_page(
    ids: Sequence[T],
    check_match: CheckMatch,
    on_error: Optional[OnError] = None,
) -> PageOutcome:
    """
    Check every id concurrently and collect the results once all are done.

    An exception raised by one check is logged and handed to `on_error`; it
    never cancels the other checks.
    """

    async def guarded(item: T):
        try:
            return True, await check_match(item)
        except Exception as e:
            logger.error(f"Unable to check item {item}: {e}", exc_info=True)
            if on_error is not None:
                on_error(item, e)
            return False, None

    outcomes = await asyncio.gather(*(guarded(item) for item in ids))

    result = PageOutcome()
    for succeeded, mismatch in outcomes:
        if not succeeded:
            result.items_errored += 1
            continue
        result.items_checked += 1
        if mismatch is not None:
            result.mismatches.append(mismatch)
    return result


def _is_last_page(page: ReconciliationPageResult, page_size: int) -> bool:
    if isinstance(page, ReconciliationErrorPageResult):
        return False
    if isinstance(page, ReconciliationSuccessPageResult):
        return page.end_of_data or len(page.ids) < page_size
    raise TypeError(f"Unexpected page result {type(page).__name__}")


async def generate_reconciliation_report(
    page_size: int,
    check_match: CheckMatch,
    next_page: Callable[[int], Awaitable[ReconciliationPageResult]],
    on_error: Optional[OnError] = None,
    first_id: int = 0,
) -> ReconciliationResult:
    """
    Run `check_match` over every id returned by `next_page`.

    Args:
        page_size: Ids requested per page; a shorter page ends the run
        check_match: Returns a mismatch for an id, or None when it matches
        next_page: Fetches the page following the given last id
        on_error: Called with the id and exception of each failed check
        first_id: Cursor used to request the first page

    Returns:
        ReconciliationResult with mismatches and item/page counters

    Raises:
        Exception: The error of the first page when it cannot be fetched
    """
    if page_size < 1:
        raise ValueError(f"Page size must be positive, got {page_size}")

    result = ReconciliationResult()
    last_id = first_id
    first_page = True

    while True:
        page = await next_page(last_id)

        if isinstance(page, ReconciliationErrorPageResult):
            if first_page:
                logger.error(f"Unable to fetch first page from id {last_id}; abandoning run")
                raise page.error
            result.pages_errored += 1
            logger.warning(
                f"Skipping page after id {last_id} ({result.pages_errored} page errors so far)"
            )
            # skip the unreadable page by moving the cursor on by a page
            last_id += page_size
            if result.pages_errored >= MAX_PAGE_ERRORS:
                logger.error(f"Stopping run after {result.pages_errored} page errors")
                break
        elif isinstance(page, ReconciliationSuccessPageResult):
            if page.ids:
                outcome = await check_page(page.ids, check_match, on_error)
                result.pages_checked += 1
                result.items_checked += outcome.items_checked
                result.items_errored += outcome.items_errored
                result.mismatches.extend(outcome.mismatches)
                last_id = page.last
        else:
            raise TypeError(f"Unexpected page result {type(page).__name__}")

        first_page = False
        if _is_last_page(page, page_size):
            break

    logger.info(
        f"Reconciliation run complete: {result.items_checked} items checked, "
        f"{result.items_errored} errored, {result.pages_checked} pages, "
        f"{result.pages_errored} page errors, {len(result.mismatches)} mismatches"
    )
    return result
