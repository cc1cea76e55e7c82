"""
Notification sink.

The escrow core relays terminal events to buyers, sellers and the admin
through ``notify(contact, message)``. Delivery is fire-and-forget: every send
runs as its own task after the unit of work has committed, and failures are
logged, never raised.

Dependencies:
    - python-telegram-bot: Delivery when TELEGRAM_BOT_TOKEN is configured
"""

import asyncio
import logging
from typing import Optional, Protocol, Set

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from models import Order, Transaction
from utils import format_currency

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, contact: str, message: str) -> None:
        ...


class TelegramNotifier:
    """Sends notifications as Telegram messages; the contact is a chat id."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def notify(self, contact: str, message: str) -> None:
        await self.bot.send_message(chat_id=contact, text=message, parse_mode=ParseMode.HTML)


class LogNotifier:
    """Fallback sink when no delivery channel is configured."""

    async def notify(self, contact: str, message: str) -> None:
        logger.info(f"Notification for {contact} (no delivery channel configured): {message}")


class NotificationDispatcher:
    """
    Fire-and-forget front for a Notifier.

    Attributes:
        sink: Underlying Notifier
        admin_contact: Contact that receives operational alerts (optional)
    """

    def __init__(self, sink: Notifier, admin_contact: Optional[str] = None):
        self.sink = sink
        self.admin_contact = admin_contact
        self._tasks: Set[asyncio.Task] = set()
        self.stats = {'sent': 0, 'failed': 0, 'skipped': 0}

    def send(self, contact: Optional[str], message: str) -> None:
        """Schedule a notification without waiting for it."""
        if not contact:
            self.stats['skipped'] += 1
            logger.warning(f"No contact for notification, skipping: {message[:80]}")
            return

        task = asyncio.get_running_loop().create_task(self._deliver(contact, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def alert_admin(self, message: str) -> None:
        if not self.admin_contact:
            logger.warning(f"Admin contact not configured, alert not delivered: {message}")
            return
        self.send(self.admin_contact, message)

    async def _deliver(self, contact: str, message: str) -> None:
        try:
            await self.sink.notify(contact, message)
            self.stats['sent'] += 1
        except TelegramError as e:
            self.stats['failed'] += 1
            logger.error(f"Failed to send notification to {contact}: {e}")
        except Exception as e:
            self.stats['failed'] += 1
            logger.error(f"Unexpected error sending notification to {contact}: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ==================== MESSAGES ====================

def _kes(amount) -> str:
    return format_currency(amount, 'KES')


def order_created(order: Order) -> str:
    return (
        f"New order #{order.id} for {order.item_description}. "
        f"Amount: {_kes(order.amount)}. The buyer is completing payment."
    )


def payment_received_buyer(order: Order, transaction: Transaction) -> str:
    return (
        f"Your payment of {_kes(transaction.amount)} for Order #{order.id} was successful. "
        f"Ref: {transaction.provider_tx_id or transaction.correlation_ref}. Funds are held in escrow."
    )


def payment_received_seller(order: Order, transaction: Transaction) -> str:
    return (
        f"Payment of {_kes(transaction.amount)} received in escrow for Order #{order.id}. "
        f"Please prepare the item for shipment."
    )


def payment_failed_buyer(order: Order, reason: str) -> str:
    return f"Your payment for Order #{order.id} failed. Reason: {reason}. Please try again."


def order_shipped(order: Order) -> str:
    message = f"Order #{order.id} has been shipped by the seller."
    if order.proof_of_delivery:
        message += f" Tracking/proof: {order.proof_of_delivery}."
    return message + " Confirm delivery once you receive it."


def delivery_reported(order: Order) -> str:
    return (
        f"The seller reports Order #{order.id} as delivered. "
        f"Please confirm delivery or raise a dispute."
    )


def delivery_confirmed(order: Order) -> str:
    return f"The buyer confirmed delivery of Order #{order.id}. Funds are being released to you."


def auto_released(order: Order, days: int) -> str:
    return (
        f"Order #{order.id} had no dispute {days} days after shipping and was completed "
        f"automatically. Funds are being released to the seller."
    )


def dispute_raised(order: Order, reason: str) -> str:
    return f"A dispute has been raised on Order #{order.id}. Reason: {reason}. An admin will review it."


def order_cancelled(order: Order) -> str:
    return f"Order #{order.id} was cancelled by the buyer before payment."


def payout_sent(order: Order, transaction: Transaction) -> str:
    return (
        f"Funds ({_kes(transaction.amount)}) for Order #{order.id} have been sent to you. "
        f"Ref: {transaction.provider_tx_id or transaction.correlation_ref}."
    )


def funds_released(order: Order) -> str:
    return f"Funds for Order #{order.id} have been released to the seller."


def refund_sent(order: Order, transaction: Transaction) -> str:
    return (
        f"Your refund of {_kes(transaction.amount)} for Order #{order.id} was successful. "
        f"Ref: {transaction.provider_tx_id or transaction.correlation_ref}."
    )


def refund_completed_seller(order: Order) -> str:
    return f"The refund for Order #{order.id} has been processed to the buyer."


def resolution_started(order: Order, action: str) -> str:
    return f"An admin resolved the dispute on Order #{order.id}: {action} is being processed."


def manual_action_required(order: Order, action: str, detail: str) -> str:
    return (
        f"Order #{order.id}: automated {action} could not be completed ({detail}). "
        f"The order needs manual handling."
    )


def underpayment_alert(order: Order, received, accepted: bool) -> str:
    outcome = "marked paid" if accepted else "left pending"
    return (
        f"Order #{order.id} was underpaid: expected {_kes(order.amount)}, "
        f"received {_kes(received)}. Order {outcome}."
    )
