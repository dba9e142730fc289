from datetime import datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from auth import Identity, can_access
from database import Base
from models import Category, Role, TransactionType, User
from schemas import TransactionIn, TransactionPatch
from services import (
    Forbidden,
    InvalidInput,
    NotFound,
    TransactionService,
    owner_filter,
    page_params,
    utcnow,
)


def _setup(session: Session) -> dict:
    admin = User(email="admin@example.com", password="x", role=Role.admin)
    alice = User(email="alice@example.com", password="x", role=Role.user)
    bob = User(email="bob@example.com", password="x", role=Role.user)
    expense = TransactionType(name="Expense", machine_name="EXPENSE")
    income = TransactionType(name="Income", machine_name="INCOME")
    session.add_all([admin, alice, bob, expense, income])
    session.commit()
    alice_food = Category(user_id=alice.id, name="Food", machine_name="food")
    bob_food = Category(user_id=bob.id, name="Food", machine_name="food")
    session.add_all([alice_food, bob_food])
    session.commit()
    return {
        "admin": Identity(user_id=admin.id, role=Role.admin),
        "alice": Identity(user_id=alice.id, role=Role.user),
        "bob": Identity(user_id=bob.id, role=Role.user),
        "expense": expense.id,
        "income": income.id,
        "alice_food": alice_food.id,
        "bob_food": bob_food.id,
    }


def _payload(category_id: int, type_id: int, amount: str, **extra) -> TransactionIn:
    return TransactionIn.model_validate(
        {"categoryId": category_id, "typeId": type_id, "amount": amount, **extra}
    )


def test_can_access_is_owner_or_admin() -> None:
    admin = Identity(user_id=1, role=Role.admin)
    user = Identity(user_id=2, role=Role.user)

    assert can_access(admin, 99)
    assert can_access(user, 2)
    assert not can_access(user, 3)
    assert not can_access(user, None)


def test_page_params_fall_back_to_defaults() -> None:
    assert page_params(None, None) == (0, 5)
    assert page_params("-3", "abc") == (0, 5)
    assert page_params("10", "0") == (10, 5)
    assert page_params(2, "7") == (2, 7)
    assert page_params(0, 5000) == (0, 100)


def test_owner_filter_ignores_user_id_for_regular_users() -> None:
    admin = Identity(user_id=1, role=Role.admin)
    user = Identity(user_id=2, role=Role.user)

    assert owner_filter(user, "7") == 2
    assert owner_filter(admin, None) is None
    assert owner_filter(admin, "7") == 7
    with pytest.raises(InvalidInput):
        owner_filter(admin, "seven")


def test_owner_reads_and_other_users_are_forbidden() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        txn = TransactionService(session, ids["alice"]).create(
            _payload(ids["alice_food"], ids["expense"], "200", date="2025-01-01", description="Lunch")
        )

        assert TransactionService(session, ids["alice"]).get(txn.id).description == "Lunch"
        assert TransactionService(session, ids["admin"]).get(txn.id).id == txn.id
        with pytest.raises(Forbidden):
            TransactionService(session, ids["bob"]).get(txn.id)
        with pytest.raises(Forbidden):
            TransactionService(session, ids["bob"]).update(
                txn.id, TransactionPatch.model_validate({"amount": 1})
            )
        with pytest.raises(Forbidden):
            TransactionService(session, ids["bob"]).delete(txn.id)
        with pytest.raises(NotFound):
            TransactionService(session, ids["alice"]).get(txn.id + 100)


def test_create_stores_owner_references_and_defaults() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, ids["alice"])

        dated = service.create(
            _payload(ids["alice_food"], ids["expense"], "12.50", date="2025-03-04T10:00:00Z")
        )
        assert dated.user_id == ids["alice"].user_id
        assert dated.amount == Decimal("12.50")
        assert dated.date == datetime(2025, 3, 4, 10, 0)
        assert dated.description == ""
        assert dated.category.machine_name == "food"
        assert dated.type.machine_name == "EXPENSE"

        before = utcnow()
        undated = service.create(
            _payload(ids["alice_food"], ids["expense"], "1", date="not a date")
        )
        assert undated.date >= before.replace(microsecond=0)

        zero = service.create(_payload(ids["alice_food"], ids["income"], "0"))
        assert zero.amount == Decimal("0")


def test_create_rejects_missing_or_foreign_references() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, ids["alice"])

        with pytest.raises(ValidationError):
            TransactionIn.model_validate({"categoryId": 0, "typeId": ids["expense"], "amount": 5})
        with pytest.raises(ValidationError):
            TransactionIn.model_validate({"categoryId": ids["alice_food"], "typeId": ids["expense"]})
        with pytest.raises(NotFound):
            service.create(_payload(ids["bob_food"], ids["expense"], "5"))
        with pytest.raises(NotFound):
            service.create(_payload(ids["alice_food"], 999, "5"))


def test_admin_creates_on_behalf_of_another_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        admin = TransactionService(session, ids["admin"])

        txn = admin.create(
            _payload(ids["bob_food"], ids["expense"], "9", userId=ids["bob"].user_id)
        )
        assert txn.user_id == ids["bob"].user_id

        with pytest.raises(NotFound):
            admin.create(_payload(ids["bob_food"], ids["expense"], "9", userId=4242))

        # a regular user's userId is ignored
        own = TransactionService(session, ids["alice"]).create(
            _payload(ids["alice_food"], ids["expense"], "3", userId=ids["bob"].user_id)
        )
        assert own.user_id == ids["alice"].user_id


def test_list_is_newest_first_and_owner_scoped() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        alice = TransactionService(session, ids["alice"])
        bob = TransactionService(session, ids["bob"])
        for amount in ("1", "2", "3"):
            alice.create(_payload(ids["alice_food"], ids["expense"], amount))
        bob.create(_payload(ids["bob_food"], ids["expense"], "4"))

        page = alice.list(0, 2, user_id=str(ids["bob"].user_id))
        assert page.total == 3
        assert [t.amount for t in page.items] == [Decimal("3"), Decimal("2")]

        everything = TransactionService(session, ids["admin"]).list(0, 10)
        assert everything.total == 4
        assert [t.amount for t in everything.items][0] == Decimal("4")

        only_bob = TransactionService(session, ids["admin"]).list(
            0, 10, user_id=str(ids["bob"].user_id)
        )
        assert only_bob.total == 1


def test_update_applies_only_well_typed_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, ids["alice"])
        txn = service.create(
            _payload(ids["alice_food"], ids["expense"], "50", date="2025-01-01", description="Lunch")
        )

        ignored = service.update(
            txn.id,
            TransactionPatch.model_validate(
                {"amount": "300", "typeId": "2", "description": 7, "categoryId": True}
            ),
        )
        assert ignored.amount == Decimal("50")
        assert ignored.description == "Lunch"

        zeroed = service.update(
            txn.id,
            TransactionPatch.model_validate(
                {"amount": 0, "typeId": ids["income"], "description": ""}
            ),
        )
        assert zeroed.amount == Decimal("0")
        assert zeroed.type_id == ids["income"]
        assert zeroed.description == ""

        redated = service.update(
            txn.id, TransactionPatch.model_validate({"date": "15.02.2025"})
        )
        assert redated.date == datetime(2025, 2, 15)

        with pytest.raises(InvalidInput):
            service.update(txn.id, TransactionPatch.model_validate({"date": "yesterday"}))
        with pytest.raises(NotFound):
            service.update(
                txn.id, TransactionPatch.model_validate({"categoryId": ids["bob_food"]})
            )


def test_delete_removes_the_transaction() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        txn = TransactionService(session, ids["alice"]).create(
            _payload(ids["alice_food"], ids["expense"], "5")
        )

        TransactionService(session, ids["admin"]).delete(txn.id)

        with pytest.raises(NotFound):
            TransactionService(session, ids["alice"]).get(txn.id)


def test_amounts_beyond_cent_precision_are_rejected_not_rounded() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _setup(session)
        service = TransactionService(session, ids["alice"])

        with pytest.raises(ValidationError):
            _payload(ids["alice_food"], ids["expense"], "12.345")
        with pytest.raises(ValidationError):
            _payload(ids["alice_food"], ids["expense"], "1234567890123")
        with pytest.raises(ValidationError):
            TransactionPatch.model_validate({"amount": 12.345})

        txn = service.create(_payload(ids["alice_food"], ids["expense"], "-12.34"))
        assert txn.amount == Decimal("-12.34")

        updated = service.update(txn.id, TransactionPatch.model_validate({"amount": 0.1}))
        assert updated.amount == Decimal("0.10")
