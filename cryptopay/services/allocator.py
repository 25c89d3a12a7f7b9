import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.models import CryptoDerivationCounter, utcnow
from ..db.session import UPSERT_INSERTS
from ..errors import AddressAllocationFailed

logger = logging.getLogger("allocator")


def next_index(db: Session, coin: str, address_type: str = "receive") -> int:
    """
    Atomically reserve the next derivation index for (coin, address_type).

    A single INSERT ... ON CONFLICT DO UPDATE ... RETURNING statement creates
    the counter at 1 (handing out 0) or bumps it, so two concurrent checkouts
    can never read the same value.
    """
    dialect = db.get_bind().dialect.name
    insert = UPSERT_INSERTS.get(dialect)
    if insert is None:
        raise AddressAllocationFailed(f"Atomic counters not supported on {dialect}")

    table = CryptoDerivationCounter.__table__
    now = utcnow()
    stmt = (
        insert(table)
        .values(coin_symbol=coin, address_type=address_type, next_index=1,
                created_at=now, updated_at=now)
        .on_conflict_do_update(
            index_elements=[table.c.coin_symbol, table.c.address_type],
            set_={"next_index": table.c.next_index + 1, "updated_at": now},
        )
        .returning(table.c.next_index - 1)
    )

    try:
        index = db.execute(stmt).scalar_one()
    except SQLAlchemyError as e:
        logger.error(f"[Allocator] index allocation failed for {coin}/{address_type}: {e}")
        raise AddressAllocationFailed(f"Failed to allocate derivation index for {coin}")

    logger.info(f"[Allocator] reserved index {index} for {coin}/{address_type}")
    return index
