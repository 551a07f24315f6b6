"""High-level notification service for payout emails."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.core.settings import get_settings
from gob_api.models.loyalty import RewardTransaction
from gob_api.models.member import Member
from gob_api.models.merchant import Merchant

from .backend import EmailBackend, SMTPEmailBackend
from .templates import RenderedTemplate, render_payout_failure_alert, render_payout_success


EXPLORER_BASE_URLS = {
    "base": "https://basescan.org/tx/",
    "base-sepolia": "https://sepolia.basescan.org/tx/",
}


@dataclass
class NotificationEvent:
    """Representation of a notification that was sent."""

    recipient: str
    subject: str
    body_text: str
    body_html: str | None
    event_type: str
    metadata: dict[str, Any]


@dataclass
class _Contact:
    email: str
    display_name: Optional[str]


class NotificationService:
    """Coordinates notification delivery via pluggable backends."""

    def __init__(
        self,
        db_session: AsyncSession,
        backend: Optional[EmailBackend] = None,
    ) -> None:
        self._db = db_session
        self._backend = backend or self._build_default_backend()
        self._events: list[NotificationEvent] = []

    @property
    def sent_events(self) -> list[NotificationEvent]:
        return self._events

    async def send_payout_success(self, transaction: RewardTransaction, merchant: Merchant) -> None:
        """Email the member a receipt for a settled payout."""

        if self._backend is None:
            return

        contact = await self._resolve_member_contact(transaction.member_id)
        if contact is None:
            logger.info(
                "Skipping payout receipt; member has no email",
                member_id=str(transaction.member_id),
                transaction_id=str(transaction.id),
            )
            return

        network = get_settings().payout_network
        explorer_base = EXPLORER_BASE_URLS.get(network)
        template = render_payout_success(
            contact_name=contact.display_name,
            merchant_name=merchant.name,
            amount_usd=transaction.usdc_amount,
            points_deducted=transaction.points_deducted,
            tx_hash=transaction.tx_hash or "",
            wallet_address=transaction.wallet_address,
            explorer_url=f"{explorer_base}{transaction.tx_hash}" if explorer_base and transaction.tx_hash else None,
        )
        await self._deliver(
            contact.email,
            template,
            event_type="payout_success",
            metadata={
                "transaction_id": str(transaction.id),
                "merchant_id": str(merchant.id),
                "tx_hash": transaction.tx_hash,
            },
        )

    async def send_payout_failure_alert(self, transaction: RewardTransaction, merchant: Merchant) -> None:
        """Alert operators that a payout needs manual remediation."""

        if self._backend is None:
            return

        settings = get_settings()
        recipients = settings.payout_alert_recipients
        if not recipients:
            return

        member = await self._db.get(Member, transaction.member_id)
        member_label = (member.display_name if member else None) or str(transaction.member_id)
        template = render_payout_failure_alert(
            merchant_name=merchant.name,
            transaction_id=str(transaction.id),
            amount_usd=transaction.usdc_amount,
            member_label=member_label,
            error_message=transaction.error_message or "unknown error",
            dashboard_url=f"{settings.frontend_url.rstrip('/')}/merchant/payouts",
        )
        for recipient in recipients:
            await self._deliver(
                recipient,
                template,
                event_type="payout_failure_alert",
                metadata={"transaction_id": str(transaction.id), "merchant_id": str(merchant.id)},
            )

    def _build_default_backend(self) -> Optional[EmailBackend]:
        settings = get_settings()
        if not settings.smtp_host or not settings.smtp_sender_email:
            return None

        return SMTPEmailBackend(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender_email=settings.smtp_sender_email,
        )

    async def _resolve_member_contact(self, member_id: UUID) -> Optional[_Contact]:
        member = await self._db.get(Member, member_id)
        if member is None or not member.email:
            return None
        return _Contact(email=member.email, display_name=member.first_name)

    async def _deliver(
        self,
        recipient: str,
        template: RenderedTemplate,
        *,
        event_type: str,
        metadata: dict[str, Any],
    ) -> None:
        if self._backend is None:
            return

        await self._backend.send_email(
            recipient,
            template.subject,
            template.text_body,
            body_html=template.html_body,
        )
        self._events.append(
            NotificationEvent(
                recipient=recipient,
                subject=template.subject,
                body_text=template.text_body,
                body_html=template.html_body,
                event_type=event_type,
                metadata=metadata,
            )
        )
