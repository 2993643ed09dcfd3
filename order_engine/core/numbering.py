from datetime import datetime
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from order_engine.core.errors import ConcurrencyConflictError
from order_engine.models.database import NumberSequence


def next_document_number(session: Session, prefix: str, number_column, today: Optional[datetime] = None) -> str:
    """
    Allocate the next ``PREFIX-YYYYMMDD-NNNN`` number inside the caller's transaction.

    The increment is a single UPDATE on the day's counter row, so concurrent
    transactions serialize on that row and never see the same value. The row
    is seeded from the highest number already stored under the day's prefix.
    """
    day_prefix = f"{prefix}-{(today or datetime.utcnow()).strftime('%Y%m%d')}"

    result = session.execute(
        update(NumberSequence)
        .where(NumberSequence.prefix == day_prefix)
        .values(last_value=NumberSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        sequence = _highest_existing_sequence(session, number_column, day_prefix) + 1
        try:
            session.execute(insert(NumberSequence).values(prefix=day_prefix, last_value=sequence))
        except IntegrityError as e:
            raise ConcurrencyConflictError(f"Number sequence {day_prefix} was created concurrently") from e
    else:
        sequence = session.execute(
            select(NumberSequence.last_value).where(NumberSequence.prefix == day_prefix)
        ).scalar_one()

    return f"{day_prefix}-{sequence:04d}"


def _highest_existing_sequence(session: Session, number_column, day_prefix: str) -> int:
    numbers = session.execute(select(number_column).where(number_column.like(f"{day_prefix}-%"))).scalars()
    highest = 0
    for number in numbers:
        suffix = number.rsplit("-", 1)[-1]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest
