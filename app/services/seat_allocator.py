import logging
from app.database import get_db_connection
from app.config import settings
from app.models.ticket import SeatAvailability
from app.core.exceptions import CapacityExhausted

logger = logging.getLogger(__name__)

SEAT_POOL_ID = "singleton"


async def allocate_next_seat(conn) -> int:
    """
    Hand out the next sequential seat from the bounded pool.

    Must run on the caller's transaction: the increment commits or rolls back
    together with the ticket that uses it. The UPDATE holds the pool row lock
    until commit, so concurrent issuers never see the same value.
    """
    seat = await conn.fetchval("""
        UPDATE seat_pool
        SET last_seat = last_seat + 1, updated_at = NOW()
        WHERE id = $1 AND last_seat < capacity
        RETURNING last_seat
    """, SEAT_POOL_ID)

    if seat is None:
        logger.warning("Seat pool exhausted")
        raise CapacityExhausted(details={"capacity": settings.seat_capacity})

    return seat


def format_seat_number(seat: int, capacity: int = None) -> str:
    """Zero-padded seat label, e.g. 0007 for a 1300-seat pool."""
    width = len(str(capacity or settings.seat_capacity))
    return str(seat).zfill(width)


async def ensure_seat_pool(capacity: int = None) -> None:
    """Create the pool row if missing; never lowers the counter."""
    async with get_db_connection() as conn:
        await conn.execute("""
            INSERT INTO seat_pool (id, capacity, last_seat, updated_at)
            VALUES ($1, $2, 0, NOW())
            ON CONFLICT (id) DO NOTHING
        """, SEAT_POOL_ID, capacity or settings.seat_capacity)


async def get_seat_availability() -> SeatAvailability:
    """Current usage of the seat pool"""
    async with get_db_connection(use_transaction=False) as conn:
        row = await conn.fetchrow("""
            SELECT capacity, last_seat FROM seat_pool WHERE id = $1
        """, SEAT_POOL_ID)

    if not row:
        capacity, allocated = settings.seat_capacity, 0
    else:
        capacity, allocated = row['capacity'], row['last_seat']

    remaining = max(capacity - allocated, 0)
    return SeatAvailability(
        capacity=capacity,
        allocated=allocated,
        remaining=remaining,
        sold_out=remaining == 0
    )
