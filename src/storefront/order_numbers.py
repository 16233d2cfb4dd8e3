"""Human-readable order numbers: ORD-<YYYYMMDD>-<4-digit daily sequence>."""

from datetime import date

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import OrderSequence

ORDER_NUMBER_PREFIX = "ORD"


def format_order_number(day: date, sequence: int) -> str:
    """
    Examples:
        (2025-01-01, 1) -> "ORD-20250101-0001"
        (2025-01-01, 12345) -> "ORD-20250101-12345"
    """
    return f"{ORDER_NUMBER_PREFIX}-{day.strftime('%Y%m%d')}-{sequence:04d}"


def next_sequence(session: Session, day: date) -> int:
    """
    Increment and return the day's counter inside the caller's transaction.

    The UPDATE takes a row lock that is held until the surrounding
    transaction ends, so concurrent checkouts on the same day get distinct
    values. The first order of a day inserts the row; losing that insert
    race falls back to the UPDATE.
    """
    key = day.strftime("%Y%m%d")
    bump = (
        update(OrderSequence)
        .where(OrderSequence.day == key)
        .values(last_value=OrderSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )

    if session.execute(bump).rowcount == 0:
        try:
            with session.begin_nested():
                session.execute(insert(OrderSequence).values(day=key, last_value=1))
            return 1
        except IntegrityError:
            session.execute(bump)

    return session.scalar(select(OrderSequence.last_value).where(OrderSequence.day == key))


def generate_order_number(session: Session, day: date) -> str:
    return format_order_number(day, next_sequence(session, day))
