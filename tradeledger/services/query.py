"""
TradeLedger Query Helpers
Shared pagination for ownership-scoped list operations.
"""

from typing import Any, List, Tuple

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession


async def paginate(session: AsyncSession, query: Select, limit: int, offset: int,
                   *order_by: Any) -> Tuple[List[Any], int]:
    """
    Run ``query`` for one page.

    Returns:
        Tuple[List[Any], int]: (rows on this page, total matching rows)
    """
    total = (await session.execute(
        select(func.count()).select_from(query.order_by(None).subquery())
    )).scalar_one()

    if order_by:
        query = query.order_by(*order_by)
    rows = (await session.execute(query.limit(limit).offset(offset))).scalars().all()
    return list(rows), int(total)
