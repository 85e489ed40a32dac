"""Outlet eligibility gate for review automation (re-evaluated every batch)."""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Outlet

ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trial")


def is_outlet_eligible(outlet: Outlet) -> bool:
    return (
        outlet.status == "active"
        and bool(outlet.automation_enabled)
        and outlet.onboarding_status == "completed"
        and outlet.subscription_status in ACTIVE_SUBSCRIPTION_STATUSES
    )


async def select_eligible_outlets(
    db: AsyncSession,
    outlet_ids: list[uuid.UUID] | None = None,
) -> list[Outlet]:
    query = select(Outlet).where(
        Outlet.status == "active",
        Outlet.automation_enabled.is_(True),
        Outlet.onboarding_status == "completed",
        Outlet.subscription_status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
    )
    if outlet_ids:
        query = query.where(Outlet.outlet_id.in_(outlet_ids))
    result = await db.execute(query.order_by(Outlet.created_at))
    return list(result.scalars().all())
