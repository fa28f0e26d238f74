import pytest
from sqlalchemy.exc import OperationalError

from conftest import LockNotAvailable
from database import transaction
from errors import LockTimeout
from models import Product


class Deadlock(Exception):
    pgcode = "40P01"


class QueryCanceled(Exception):
    pgcode = "57014"


def add_product(db):
    db.add(Product(name="Floor Pump", type="Tools", price=25, stock=3))
    db.flush()


@pytest.mark.parametrize("orig", [LockNotAvailable(), Deadlock()])
def test_lock_errors_become_lock_timeout(db, orig):
    with pytest.raises(LockTimeout) as excinfo:
        with transaction(db):
            add_product(db)
            raise OperationalError("SELECT ... FOR UPDATE", {}, orig)

    assert excinfo.value.status_code == 503
    assert db.query(Product).count() == 0


def test_other_operational_errors_propagate(db):
    with pytest.raises(OperationalError):
        with transaction(db):
            add_product(db)
            raise OperationalError("SELECT 1", {}, QueryCanceled())

    assert db.query(Product).count() == 0


def test_transaction_commits_on_success(db):
    with transaction(db):
        add_product(db)

    db.rollback()
    assert db.query(Product).count() == 1
