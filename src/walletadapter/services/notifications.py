"""Cold wallet operator notifications.

Emails ask operators to top up or acknowledge float movements; SMS alerts fire
when a withdrawal can not be paid from the hot wallet. Sending is best effort:
a failure is logged and never undoes ledger work.
"""

import logging
from decimal import Decimal

from walletadapter.clients.notifier import EmailRequest, EmailUser, NotifierClient, SmsRequest
from walletadapter.config import Settings
from walletadapter.errors import LockAcquireError, ServicesRequestError
from walletadapter.utils.locks import SMS_DEDUP_LOCK_MS, LockCoordinator, sms_dedup_identifier

logger = logging.getLogger(__name__)


class ColdWalletNotifier:
    """Sends fund/withdraw emails and insufficient-float SMS to cold wallet operators."""

    def __init__(self, notifier: NotifierClient, locks: LockCoordinator, settings: Settings):
        self.notifier = notifier
        self.locks = locks
        self.settings = settings

    @property
    def _recipients(self) -> list[EmailUser]:
        return [EmailUser(email=self.settings.cold_wallet_email, name="Cold Wallet")]

    def fund_subject(self, asset_symbol: str) -> str:
        prefix = "Live" if self.settings.is_production else "Test"
        return f"{prefix}: Please fund Bundle hot wallet address for {asset_symbol}"

    async def send_fund_email(self, asset_symbol: str, amount: Decimal) -> bool:
        """Ask operators to fund the hot wallet. ``amount`` is in display units."""
        subject = self.fund_subject(asset_symbol)
        request = EmailRequest(
            subject=subject,
            recipients=self._recipients,
            template_id=self.settings.cold_wallet_email_template_id,
            params={"amount": str(amount), "assetSymbol": asset_symbol, "subject": subject},
        )
        return await self._send_email(request)

    async def send_withdraw_email(
        self, asset_symbol: str, amount: Decimal, address: str, memo: str = ""
    ) -> bool:
        """Tell operators surplus float was moved to the brokerage."""
        prefix = "Live" if self.settings.is_production else "Test"
        content = (
            f"{amount} {asset_symbol} was withdrawn from the Bundle hot wallet "
            f"to brokerage address {address}"
        )
        if memo:
            content += f" with memo {memo}"
        request = EmailRequest(
            subject=f"{prefix}: Bundle hot wallet withdrawal for {asset_symbol}",
            recipients=self._recipients,
            content=content,
        )
        return await self._send_email(request)

    async def notify_insufficient_float(self, asset_symbol: str, amount: Decimal) -> bool:
        """Alert operators that the float can not cover ``amount`` (display units).

        At most one SMS per asset per hour: the de-dup lease is taken and left to
        expire rather than released.
        """
        try:
            await self.locks.acquire(sms_dedup_identifier(asset_symbol), SMS_DEDUP_LOCK_MS)
        except LockAcquireError:
            logger.info(f"Insufficient float SMS for {asset_symbol} already sent this hour")
            return False

        message = (
            f"Please fund Bundle hot wallet address for {asset_symbol} "
            f"with at least {amount} {asset_symbol}"
        )
        try:
            await self.notifier.send_sms(
                SmsRequest(message=message, phone_number=self.settings.cold_wallet_sms_number)
            )
        except ServicesRequestError as e:
            logger.warning(f"Insufficient float SMS for {asset_symbol} failed: {e}")
            return False
        return True

    async def _send_email(self, request: EmailRequest) -> bool:
        try:
            await self.notifier.send_email(request)
        except ServicesRequestError as e:
            logger.warning(f"Email '{request.subject}' failed: {e}")
            return False
        return True
