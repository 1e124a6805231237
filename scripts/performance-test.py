#!/usr/bin/env python3
import asyncio
import sys
import os
import time
from decimal import Decimal

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from comparison import compare_objects
from models import AccountFields, BalanceFields, ReconciliationSuccessPageResult
from reconciliation_engine import generate_reconciliation_report

TOTAL_PRISONERS = 10000
PAGE_SIZE = 100


def balance_fields(root_offender_id: int, hold) -> BalanceFields:
    return BalanceFields(
        prison_number=f'A{root_offender_id:05d}',
        accounts=[
            AccountFields(prison_id='MDI', account_code=code, balance=Decimal('10.00'), hold_balance=hold)
            for code in (2101, 2102, 2103)
        ],
    )


# Generate test data: every 20th prisoner has a DPS hold balance NOMIS lacks
async def next_page(last_id: int):
    ids = list(range(last_id + 1, min(last_id + PAGE_SIZE, TOTAL_PRISONERS) + 1))
    return ReconciliationSuccessPageResult(ids=ids, last=ids[-1] if ids else last_id)


async def check_match(root_offender_id: int):
    dps_hold = Decimal('1.00') if root_offender_id % 20 == 0 else Decimal('0')
    differences = compare_objects(
        balance_fields(root_offender_id, dps_hold),
        balance_fields(root_offender_id, None),
        'prisoner-balances',
    )
    return differences or None


# Performance test
start_time = time.time()
result = asyncio.run(generate_reconciliation_report(PAGE_SIZE, check_match, next_page))
duration = time.time() - start_time

print(f'Reconciled {TOTAL_PRISONERS:,} prisoners in {duration:.2f} seconds')
assert duration < 30, f'Performance test failed: {duration:.2f}s > 30s'
assert result.items_checked == TOTAL_PRISONERS, f'Expected {TOTAL_PRISONERS} checked, got {result.items_checked}'
assert len(result.mismatches) == 500, f'Expected 500 mismatches, got {len(result.mismatches)}'
print('Performance test passed')
