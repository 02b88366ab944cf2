"""
Staff notification bot.

Sends human-readable HTML messages to the admin chat for disputes,
resolutions, withdrawals, deposits and risk alerts. Delivery is
best-effort: failures are logged and reported as False, never raised.
"""

import html
import logging
from typing import Optional, Dict, Any

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from escrow_models import EventType, RiskAlert, TransactionEvent
from utils import format_currency, mask_sensitive_data

logger = logging.getLogger(__name__)


NOTIFY_ICONS = {
    'kyc': '🪪',
    'withdrawal': '💸',
    'deposit': '💰',
    'dispute': '⚠️',
    'risk_alert': '🚨',
    'custom': '📢',
}

STAFF_EVENTS = {
    EventType.DISPUTED: ('dispute', 'Dispute Opened'),
    EventType.RESOLVED_RELEASE: ('dispute', 'Dispute Resolved: Released to Seller'),
    EventType.RESOLVED_REFUND: ('dispute', 'Dispute Resolved: Refunded to Buyer'),
}


class StaffNotifier:
    """
    Best-effort Telegram notifications for staff.

    Attributes:
        bot: Telegram bot instance (None disables sending)
        admin_chat_id: Chat that receives staff alerts
    """

    def __init__(self, bot: Optional[Bot], admin_chat_id: Optional[str]):
        self.bot = bot
        self.admin_chat_id = admin_chat_id

    @classmethod
    def from_config(cls, config) -> 'StaffNotifier':
        """Build from Config; disabled when token or chat id is missing."""
        if not config.has_telegram_config:
            logger.warning("Telegram not configured - staff notifications disabled")
            return cls(None, None)
        return cls(Bot(token=config.telegram_bot_token), config.admin_chat_id)

    @property
    def enabled(self) -> bool:
        return bool(self.bot and self.admin_chat_id)

    async def notify(
        self,
        kind: str,
        title: str,
        message: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send a staff notification.

        Args:
            kind: One of kyc, withdrawal, deposit, dispute, risk_alert, custom
            title: Bold headline
            message: Body text (escaped)
            fields: Optional label/value lines appended to the body

        Returns:
            True if Telegram accepted the message
        """
        if not self.enabled:
            logger.debug(f"Staff notification skipped (disabled): {title}")
            return False

        icon = NOTIFY_ICONS.get(kind, NOTIFY_ICONS['custom'])
        lines = [f"{icon} <b>{html.escape(title)}</b>", "", html.escape(message)]
        if fields:
            lines.append("")
            for label, value in fields.items():
                lines.append(f"<b>{html.escape(str(label))}:</b> {html.escape(str(value))}")

        try:
            await self.bot.send_message(
                chat_id=self.admin_chat_id,
                text="\n".join(lines),
                parse_mode=ParseMode.HTML
            )
            logger.info(f"Staff notification sent: {kind} - {title}")
            return True
        except TelegramError as e:
            logger.error(f"Failed to send staff notification '{title}': {e}")
            return False

    async def on_event(self, event: TransactionEvent) -> None:
        """Observer hook: alert staff about disputes and their resolution."""
        route = STAFF_EVENTS.get(event.event_type)
        if route is None:
            return

        kind, title = route
        fields = {
            'Transaction': event.transaction_id,
            'By': mask_sensitive_data(event.actor_id or 'system'),
            'Status': f"{event.from_status.value} → {event.to_status.value}",
        }
        if 'reason' in event.payload:
            fields['Reason'] = event.payload['reason']
        if 'refunded' in event.payload:
            fields['Refunded'] = format_currency(event.payload['refunded'])
        if 'seller_receives' in event.payload:
            fields['Released'] = format_currency(event.payload['seller_receives'])

        if event.event_type == EventType.DISPUTED:
            message = "An escrow transaction needs staff attention."
        else:
            message = "A dispute has been closed."

        await self.notify(kind, title, message, fields)

    async def notify_risk_alert(self, alert: RiskAlert) -> bool:
        fields = {'Type': alert.alert_type}
        if alert.user_id:
            fields['User'] = mask_sensitive_data(alert.user_id)
        if alert.transaction_id:
            fields['Transaction'] = alert.transaction_id
        return await self.notify('risk_alert', 'Risk Alert', alert.description, fields)
