"""Withdrawal intake endpoints."""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from walletadapter import jobs
from walletadapter.api.responses import envelope
from walletadapter.api.routes.jobs import get_context
from walletadapter.context import TreasuryContext
from walletadapter.services.batch import ExternalTransfer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/assets")


class ExternalTransferRequest(BaseModel):
    """Pay out a completed debit to an external address."""

    debit_reference: str = Field(..., min_length=1, alias="debitReference")
    transaction_reference: str = Field(..., min_length=1, alias="transactionReference")
    recipient_address: str = Field(..., min_length=1, alias="recipientAddress")
    value: Decimal = Field(..., gt=0)
    network: str = ""
    initiator_id: Optional[uuid.UUID] = Field(None, alias="initiatorId")

    model_config = {"populate_by_name": True}


@router.post("/transfer-external")
async def transfer_external(
    request: ExternalTransferRequest,
    context: TreasuryContext = Depends(get_context),
):
    """Queue a withdrawal against a completed debit.

    400 when withdrawals are off for the asset, the debit is not completed or
    the value is above the debit; 404 when the debit does not exist.
    """
    withdrawal = await jobs.external_transfer(
        context,
        ExternalTransfer(
            debit_reference=request.debit_reference,
            transaction_reference=request.transaction_reference,
            recipient_address=request.recipient_address,
            value=request.value,
            network=request.network,
            initiator_id=request.initiator_id,
        ),
    )
    return envelope(
        "Transfer queued",
        data={
            "transactionReference": withdrawal.transaction_reference,
            "debitReference": withdrawal.debit_reference,
            "transactionStatus": withdrawal.transaction_status,
        },
    )
