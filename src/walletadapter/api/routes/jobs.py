"""One-shot triggers for the treasury loops.

Triggers return as soon as the job is spawned; the job keeps running if the
request is cancelled.
"""

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from walletadapter import jobs
from walletadapter.api.responses import envelope
from walletadapter.context import TreasuryContext
from walletadapter.scheduler import JobRunner

logger = logging.getLogger(__name__)

router = APIRouter()


class ConfirmTransactionRequest(BaseModel):
    """Request to settle a broadcast transaction."""

    transaction_hash: str = Field(..., min_length=1, alias="transactionHash")

    model_config = {"populate_by_name": True}


def get_context(request: Request) -> TreasuryContext:
    return request.app.state.context


def get_runner(request: Request) -> JobRunner:
    return request.app.state.runner


@router.post("/assets/process-transaction")
async def process_transaction(
    context: TreasuryContext = Depends(get_context),
    runner: JobRunner = Depends(get_runner),
):
    """Kick the single withdrawal dispatcher."""
    runner.spawn("withdrawal_dispatcher", lambda: jobs.run_withdrawal_dispatcher(context, runner))
    return envelope("Withdrawal processing started")


@router.post("/assets/process-batched-transactions")
async def process_batched_transactions(
    context: TreasuryContext = Depends(get_context),
    runner: JobRunner = Depends(get_runner),
):
    """Kick the UTXO batch processor."""
    runner.spawn("batch_processor", lambda: jobs.run_batch_processor(context, runner))
    return envelope("Batch processing started")


@router.post("/trigger-float-manager")
async def trigger_float_manager(
    context: TreasuryContext = Depends(get_context),
    runner: JobRunner = Depends(get_runner),
):
    runner.spawn("float_manager", lambda: jobs.run_float_manager(context))
    return envelope("Float manager started")


@router.post("/trigger-sweep")
async def trigger_sweep(
    context: TreasuryContext = Depends(get_context),
    runner: JobRunner = Depends(get_runner),
):
    runner.spawn("sweeper", lambda: jobs.run_sweeper(context))
    return envelope("Sweep started")


@router.post("/assets/confirm-transaction")
async def confirm_transaction(
    request: ConfirmTransactionRequest,
    context: TreasuryContext = Depends(get_context),
):
    """Settle a broadcast transaction now. 404 if the hash was never recorded."""
    result = await jobs.confirm_transaction(context, request.transaction_hash)
    logger.info(f"Confirmation of {result.transaction_hash} updated {result.updated} row(s)")
    return envelope(
        "Transaction confirmed",
        data={
            "transactionHash": result.transaction_hash,
            "status": result.status,
            "updated": result.updated,
        },
    )
