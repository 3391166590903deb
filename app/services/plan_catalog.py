"""
Plan Catalog - Read-only lookup of store product ids in the plans table.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Plan
from app.exceptions import PlanNotFoundError
from app.models.domain import PlanData, Platform

logger = get_logger(__name__)


class PlanCatalog:
    """Resolves store product ids to internal plans."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_product_id(self, platform: Platform, product_id: str) -> PlanData:
        """
        Find the active plan for a store product id.

        Raises:
            PlanNotFoundError: No active plan references the product
        """
        column = Plan.ios_product_id if platform == Platform.APPLE else Plan.android_product_id
        stmt = select(Plan).where(
            column == product_id,
            Plan.is_active == True,  # noqa: E712
        )
        result = await self.session.execute(stmt)
        plan = result.scalar_one_or_none()

        if plan is None:
            logger.error(
                "plan_not_found",
                platform=platform.value,
                product_id=product_id,
            )
            raise PlanNotFoundError(product_id, platform.value)

        return PlanData(
            id=plan.id,
            key=plan.key,
            name=plan.name,
            android_product_id=plan.android_product_id,
            ios_product_id=plan.ios_product_id,
            unit_amount_minor=plan.unit_amount_minor,
            currency=plan.currency,
            display_price=plan.display_price,
            is_active=plan.is_active,
        )
