import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from auth import Identity, hash_password, issue_session_token, verify_password
from database import Base
from models import Category, Role, User
from schemas import UserIn, UserPatch
from services import (
    Conflict,
    Forbidden,
    Unauthenticated,
    UserService,
    authenticate,
    resolve_identity,
)


def _users(session: Session) -> tuple[Identity, Identity, Identity]:
    admin = User(email="admin@example.com", password=hash_password("secret"), role=Role.admin)
    alice = User(email="alice@example.com", password=hash_password("secret"), role=Role.user)
    bob = User(email="bob@example.com", password="x", role=Role.user)
    session.add_all([admin, alice, bob])
    session.commit()
    return (
        Identity(user_id=admin.id, role=Role.admin),
        Identity(user_id=alice.id, role=Role.user),
        Identity(user_id=bob.id, role=Role.user),
    )


def test_admin_lists_everyone_and_users_only_themselves() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        admin, alice, bob = _users(session)

        assert [u.email for u in UserService(session, admin).list()] == [
            "admin@example.com",
            "alice@example.com",
            "bob@example.com",
        ]
        assert [u.id for u in UserService(session, alice).list()] == [alice.user_id]
        with pytest.raises(Forbidden):
            UserService(session, alice).get(bob.user_id)


def test_only_admin_creates_users_and_emails_are_unique() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        admin, alice, _ = _users(session)
        payload = UserIn.model_validate(
            {"email": "carol@example.com", "password": "pw", "role": "SUPERUSER"}
        )

        with pytest.raises(Forbidden):
            UserService(session, alice).create(payload)

        carol = UserService(session, admin).create(payload)
        assert carol.role == Role.user
        assert verify_password("pw", carol.password)

        with pytest.raises(Conflict):
            UserService(session, admin).create(payload)


def test_users_cannot_promote_themselves() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        admin, alice, bob = _users(session)

        updated = UserService(session, alice).update(
            alice.user_id, UserPatch.model_validate({"role": "ADMIN", "name": "Alice"})
        )
        assert updated.role == Role.user
        assert updated.name == "Alice"

        promoted = UserService(session, admin).update(
            bob.user_id, UserPatch.model_validate({"role": "ADMIN"})
        )
        assert promoted.role == Role.admin


def test_deleting_a_user_removes_their_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        admin, alice, _ = _users(session)
        session.add(Category(user_id=alice.user_id, name="Food", machine_name="food"))
        session.commit()

        UserService(session, admin).delete(alice.user_id)

        assert session.get(User, alice.user_id) is None
        assert session.query(Category).count() == 0


def test_authenticate_and_resolve_identity() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        admin, alice, bob = _users(session)

        user = authenticate(session, " alice@example.com ", "secret")
        assert user.id == alice.user_id
        with pytest.raises(Unauthenticated):
            authenticate(session, "alice@example.com", "wrong")
        with pytest.raises(Unauthenticated):
            authenticate(session, "bob@example.com", "x")

        # role comes from the store, not from the token
        stale = issue_session_token(Identity(user_id=alice.user_id, role=Role.admin))
        assert resolve_identity(session, stale) == alice

        with pytest.raises(Unauthenticated):
            resolve_identity(session, "not-a-token")
        with pytest.raises(Unauthenticated):
            resolve_identity(session, "")

        orphan = issue_session_token(Identity(user_id=999, role=Role.user))
        with pytest.raises(Unauthenticated):
            resolve_identity(session, orphan)
