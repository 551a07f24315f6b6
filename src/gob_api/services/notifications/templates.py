"""Notification templates for payout events."""

from __future__ import annotations

import html
from dataclasses import dataclass
from decimal import Decimal

from gob_api.core.logging import mask_wallet


@dataclass
class RenderedTemplate:
    subject: str
    text_body: str
    html_body: str


def _format_usd(amount: Decimal | float | int | None) -> str:
    value = Decimal(str(amount or 0)).quantize(Decimal("0.01"))
    return f"${value}"


def render_payout_success(
    *,
    contact_name: str | None,
    merchant_name: str,
    amount_usd: Decimal,
    points_deducted: int | None,
    tx_hash: str,
    wallet_address: str | None,
    explorer_url: str | None,
) -> RenderedTemplate:
    """Render the member-facing receipt for a completed USDC payout."""

    greeting = f"Hi {contact_name}," if contact_name else "Hi there,"
    amount_label = _format_usd(amount_usd)
    subject = f"You received {amount_label} USDC from {merchant_name}"

    text_lines = [
        greeting,
        "",
        f"{merchant_name} just sent {amount_label} USDC to your wallet.",
    ]
    if points_deducted:
        text_lines.append(f"Points redeemed: {points_deducted}")
    if wallet_address:
        text_lines.append(f"Wallet: {mask_wallet(wallet_address)}")
    text_lines.append(f"Transaction: {tx_hash}")
    if explorer_url:
        text_lines.append(f"View on explorer: {explorer_url}")
    text_lines.extend(["", "Thanks for being a loyal customer.", "The GOB Team"])

    explorer_html = ""
    if explorer_url:
        explorer_html = f'<p><a href="{html.escape(explorer_url)}">View transaction</a></p>'
    points_html = f"<p>Points redeemed: {points_deducted}</p>" if points_deducted else ""

    html_body = f"""<html>
  <body>
    <p>{html.escape(greeting)}</p>
    <p><strong>{html.escape(merchant_name)}</strong> just sent <strong>{amount_label} USDC</strong> to your wallet.</p>
    {points_html}
    <p>Transaction: <code>{html.escape(tx_hash)}</code></p>
    {explorer_html}
    <p>Thanks for being a loyal customer.</p>
    <p>The GOB Team</p>
  </body>
</html>"""

    return RenderedTemplate(subject=subject, text_body="\n".join(text_lines), html_body=html_body)


def render_payout_failure_alert(
    *,
    merchant_name: str,
    transaction_id: str,
    amount_usd: Decimal | None,
    member_label: str,
    error_message: str,
    dashboard_url: str | None = None,
) -> RenderedTemplate:
    """Render the operator alert for a payout that needs manual remediation."""

    amount_label = _format_usd(amount_usd)
    subject = f"[GOB] Payout failed for {merchant_name} ({amount_label})"
    dashboard_html = ""
    if dashboard_url:
        dashboard_html = f'<p><a href="{html.escape(dashboard_url)}">Open payouts dashboard</a></p>'
    text_body = "\n".join(
        [
            "A USDC payout failed after the member's points were redeemed.",
            "",
            f"Merchant: {merchant_name}",
            f"Member: {member_label}",
            f"Amount: {amount_label}",
            f"Transaction: {transaction_id}",
            f"Error: {error_message}",
            "",
            "Retry the payout from the merchant dashboard once the cause is resolved.",
            *([dashboard_url] if dashboard_url else []),
        ]
    )
    html_body = f"""<html>
  <body>
    <p>A USDC payout failed after the member's points were redeemed.</p>
    <ul>
      <li>Merchant: {html.escape(merchant_name)}</li>
      <li>Member: {html.escape(member_label)}</li>
      <li>Amount: {amount_label}</li>
      <li>Transaction: {html.escape(transaction_id)}</li>
      <li>Error: {html.escape(error_message)}</li>
    </ul>
    <p>Retry the payout from the merchant dashboard once the cause is resolved.</p>
    {dashboard_html}
  </body>
</html>"""
    return RenderedTemplate(subject=subject, text_body=text_body, html_body=html_body)


__all__ = ["RenderedTemplate", "render_payout_failure_alert", "render_payout_success"]
