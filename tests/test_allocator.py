from concurrent.futures import ThreadPoolExecutor
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError

from cryptopay.db.models import CryptoDerivationCounter
from cryptopay.errors import AddressAllocationFailed
from cryptopay.services.allocator import next_index


def test_first_index_is_zero_and_increments(db):
    assert next_index(db, "BTC") == 0
    assert next_index(db, "BTC") == 1
    assert next_index(db, "BTC") == 2
    db.commit()

    counter = db.query(CryptoDerivationCounter).filter_by(coin_symbol="BTC").one()
    assert counter.next_index == 3


def test_counters_are_scoped_by_coin_and_type(db):
    assert next_index(db, "BTC") == 0
    assert next_index(db, "LTC") == 0
    assert next_index(db, "BTC", "change") == 0
    assert next_index(db, "BTC") == 1
    db.commit()
    assert db.query(CryptoDerivationCounter).count() == 3


def test_rolled_back_reservation_is_not_persisted(db):
    next_index(db, "ETH")
    db.rollback()
    assert next_index(db, "ETH") == 0


def test_concurrent_allocations_never_repeat(session_factory):
    def allocate(_):
        reserved = []
        for _ in range(5):
            with session_factory() as session:
                reserved.append(next_index(session, "ETH"))
                session.commit()
        return reserved

    with ThreadPoolExecutor(max_workers=8) as pool:
        indices = [i for batch in pool.map(allocate, range(8)) for i in batch]

    assert len(indices) == 40
    assert sorted(indices) == list(range(40))


def test_database_error_surfaces_as_allocation_failure(db):
    with mock.patch.object(db, "execute", side_effect=OperationalError("upsert", {}, Exception("locked"))):
        with pytest.raises(AddressAllocationFailed):
            next_index(db, "BTC")
