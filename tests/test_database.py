"""Tests for the unit of work."""

import logging
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from storefront.models import Product


def product_count(db) -> int:
    with db.unit_of_work() as uow:
        return uow.session.scalar(select(func.count(Product.id)))


def add_product(session, slug="thing"):
    session.add(Product(name="Thing", slug=slug, price=Decimal("1.00"), stock_quantity=1))


class TestUnitOfWork:
    def test_commit_persists_and_runs_hooks(self, db):
        calls = []
        with db.unit_of_work() as uow:
            add_product(uow.session)
            uow.after_commit(calls.append, "committed")
            assert calls == []

        assert calls == ["committed"]
        assert product_count(db) == 1

    def test_exception_rolls_back_and_skips_hooks(self, db):
        calls = []
        with pytest.raises(RuntimeError):
            with db.unit_of_work() as uow:
                add_product(uow.session)
                uow.session.flush()
                uow.after_commit(calls.append, "committed")
                raise RuntimeError("boom")

        assert calls == []
        assert product_count(db) == 0

    def test_failing_hook_is_logged_not_raised(self, db, caplog):
        def broken():
            raise ValueError("hook failed")

        calls = []
        with caplog.at_level(logging.ERROR, logger="storefront.database"):
            with db.unit_of_work() as uow:
                add_product(uow.session)
                uow.after_commit(broken)
                uow.after_commit(calls.append, "second")

        assert calls == ["second"]
        assert "Post-commit hook broken failed" in caplog.text
        assert product_count(db) == 1

    def test_session_outside_block_raises(self, db):
        uow = db.unit_of_work()
        with pytest.raises(RuntimeError):
            uow.session
