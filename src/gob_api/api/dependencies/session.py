"""Identity dependencies for member and merchant-staff APIs.

The edge proxy authenticates callers and forwards their identity in headers;
these dependencies only parse and require them.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from fastapi import Header, HTTPException, status


def _parse_uuid(raw: str | None, *, missing: str, invalid: str) -> UUID:
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=missing)
    try:
        return UUID(raw)
    except ValueError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=invalid) from error


@dataclass(frozen=True)
class MerchantContext:
    merchant_id: UUID
    staff_id: str | None


async def require_member_id(member_id: str | None = Header(None, alias="X-Member-Id")) -> UUID:
    """Resolve the authenticated member from forwarded session headers."""

    return _parse_uuid(
        member_id,
        missing="Missing member session context",
        invalid="Invalid member identifier",
    )


async def require_merchant_context(
    merchant_id: str | None = Header(None, alias="X-Merchant-Id"),
    staff_id: str | None = Header(None, alias="X-Staff-Id"),
) -> MerchantContext:
    resolved = _parse_uuid(
        merchant_id,
        missing="Missing merchant session context",
        invalid="Invalid merchant identifier",
    )
    return MerchantContext(merchant_id=resolved, staff_id=(staff_id or "").strip() or None)
