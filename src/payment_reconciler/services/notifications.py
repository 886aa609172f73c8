"""Notification dispatcher.

Sends best-effort side-effect notifications after a reconciliation commits:
- In-app notification row for the affected user
- Chat-style webhook embed for the operations channel
- Transactional email through an HTTP email endpoint

Channels are isolated: a failing channel is logged and reported in the
DispatchReport, and never raises into the reconciliation path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciler.config import NotificationConfig
from payment_reconciler.models import Notification as NotificationRow
from payment_reconciler.models.base import new_id

logger = logging.getLogger(__name__)

COLOR_SUCCESS = 0x00FF00
COLOR_GATEWAY = 0x0070BA
COLOR_FAILURE = 0xFF0000
COLOR_REFUND = 0x9B59B6


@dataclass(frozen=True)
class EmbedField:
    name: str
    value: str
    inline: bool = True


@dataclass(frozen=True)
class ChatMessage:
    """Embed posted to the outbound chat webhook."""

    title: str
    color: int
    fields: tuple[EmbedField, ...] = ()
    content: str | None = None

    def to_payload(self, timestamp: datetime) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "embeds": [
                {
                    "title": self.title,
                    "color": self.color,
                    "fields": [
                        {"name": f.name, "value": f.value, "inline": f.inline}
                        for f in self.fields
                    ],
                    "timestamp": timestamp.isoformat(),
                }
            ]
        }
        if self.content:
            payload["content"] = self.content
        return payload


@dataclass(frozen=True)
class InAppMessage:
    user_id: str
    type: str
    title: str
    message: str
    link: str | None = None


@dataclass(frozen=True)
class EmailMessage:
    to: str
    template_name: str
    variables: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Notification:
    """One logical notification fanned out to the configured channels."""

    kind: str
    chat: ChatMessage | None = None
    in_app: InAppMessage | None = None
    email: EmailMessage | None = None


@dataclass
class DispatchReport:
    """Which channels delivered and which failed."""

    kind: str
    delivered: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, Exception] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors


def _money(amount: Decimal | None, currency: str | None = None) -> str:
    if amount is None:
        return "N/A"
    text = f"{amount:,.2f}"
    return f"{text} {currency}" if currency else text


def deposit_completed(
    *,
    user_id: str,
    amount: Decimal,
    new_balance: Decimal,
    email: str | None,
    gateway_order_id: str,
) -> Notification:
    """Wallet top-up credited."""
    return Notification(
        kind="deposit_completed",
        chat=ChatMessage(
            title="Deposit completed",
            color=COLOR_GATEWAY,
            fields=(
                EmbedField("Amount", _money(amount)),
                EmbedField("New balance", _money(new_balance)),
                EmbedField("Gateway order", gateway_order_id),
                EmbedField("Email", email or "N/A"),
            ),
        ),
        in_app=InAppMessage(
            user_id=user_id,
            type="deposit",
            title="Deposit successful",
            message=(
                f"Your deposit of {_money(amount)} was credited. "
                f"Current balance: {_money(new_balance)}"
            ),
            link="/profile?tab=history",
        ),
        email=EmailMessage(
            to=email,
            template_name="deposit_success",
            variables={
                "customer_email": email,
                "amount": _money(amount),
                "new_balance": _money(new_balance),
                "date": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
            },
        )
        if email
        else None,
    )


def checkout_completed(
    *,
    order_number: str | None,
    amount: Decimal | None,
    currency: str | None,
    gateway_order_id: str,
    customer_email: str | None,
) -> Notification:
    """Checkout payment captured; order is PAID."""
    return Notification(
        kind="checkout_completed",
        chat=ChatMessage(
            title="Payment completed",
            color=COLOR_GATEWAY,
            fields=(
                EmbedField("Order", order_number or "N/A"),
                EmbedField("Amount", _money(amount, currency)),
                EmbedField("Gateway order", gateway_order_id, inline=False),
                EmbedField("Email", customer_email or "N/A"),
            ),
        ),
    )


def checkout_failed(*, gateway_order_id: str, reason: str) -> Notification:
    """Checkout capture denied or order cancelled."""
    return Notification(
        kind="checkout_failed",
        chat=ChatMessage(
            title="Payment failed",
            color=COLOR_FAILURE,
            fields=(
                EmbedField("Gateway order", gateway_order_id),
                EmbedField("Reason", reason),
            ),
        ),
    )


def refund_recorded(
    *,
    order_number: str | None,
    amount: Decimal | None,
    currency: str | None,
    capture_id: str,
) -> Notification:
    """Gateway confirmed a refund; order is REFUNDED."""
    return Notification(
        kind="refund_recorded",
        chat=ChatMessage(
            title="Refund confirmed by gateway",
            color=COLOR_REFUND,
            fields=(
                EmbedField("Order", order_number or "N/A"),
                EmbedField("Refund amount", _money(amount, currency)),
                EmbedField("Capture", capture_id, inline=False),
            ),
        ),
    )


def amount_mismatch_alert(
    *, deposit_id: str, expected: Decimal, received: Decimal | None, gateway_order_id: str
) -> Notification:
    """Security alert: the gateway amount does not match the deposit."""
    return Notification(
        kind="amount_mismatch",
        chat=ChatMessage(
            title="Deposit amount mismatch",
            color=COLOR_FAILURE,
            content="@everyone CRITICAL SECURITY ALERT",
            fields=(
                EmbedField("Deposit", deposit_id),
                EmbedField("Expected", _money(expected)),
                EmbedField("Received", _money(received)),
                EmbedField("Gateway order", gateway_order_id, inline=False),
            ),
        ),
    )


class NotificationDispatcher:
    """Fans notifications out to in-app, chat webhook and email channels.

    Usage:
        dispatcher = NotificationDispatcher(config, session_factory)
        report = await dispatcher.dispatch(deposit_completed(...))

    Only call after the ledger transaction has committed.
    """

    def __init__(
        self,
        config: NotificationConfig,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.session_factory = session_factory
        self._client = client

    async def dispatch(self, notification: Notification) -> DispatchReport:
        """Deliver to every channel the notification and config allow.

        Never raises; failures are logged and collected in the report.
        """
        report = DispatchReport(kind=notification.kind)

        await self._run(report, "in_app", notification.in_app, self._send_in_app)
        await self._run(report, "chat", notification.chat, self._send_chat)
        await self._run(report, "email", notification.email, self._send_email)

        if report.errors:
            logger.warning(
                "Notification %s partially failed: %s",
                notification.kind,
                ", ".join(sorted(report.errors)),
            )
        return report

    async def _run(self, report: DispatchReport, channel: str, message: Any, sender: Any) -> None:
        if message is None:
            return
        try:
            sent = await sender(message)
        except Exception as e:
            logger.exception("Notification channel %s failed for %s", channel, report.kind)
            report.errors[channel] = e
            return
        if sent:
            report.delivered.append(channel)
        else:
            report.skipped.append(channel)

    async def _send_in_app(self, message: InAppMessage) -> bool:
        if self.session_factory is None:
            return False
        async with self.session_factory() as session:
            await session.execute(
                insert(NotificationRow).values(
                    id=new_id(),
                    user_id=message.user_id,
                    type=message.type,
                    title=message.title,
                    message=message.message,
                    link=message.link,
                )
            )
            await session.commit()
        return True

    async def _send_chat(self, message: ChatMessage) -> bool:
        if not self.config.webhook_url:
            return False
        await self._post(
            self.config.webhook_url,
            json=message.to_payload(datetime.now(timezone.utc)),
        )
        return True

    async def _send_email(self, message: EmailMessage) -> bool:
        if not self.config.email_endpoint_url:
            return False
        headers = {}
        if self.config.email_api_key:
            headers["Authorization"] = f"Bearer {self.config.email_api_key}"
        await self._post(
            self.config.email_endpoint_url,
            json={
                "to": message.to,
                "templateName": message.template_name,
                "variables": message.variables,
            },
            headers=headers,
        )
        return True

    async def _post(self, url: str, **kwargs: Any) -> None:
        if self._client is not None:
            response = await self._client.post(url, timeout=self.config.timeout_seconds, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(url, **kwargs)
        response.raise_for_status()
