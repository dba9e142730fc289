import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from auth import hash_password
from config import get_settings
from database import Base, get_engine, session_scope
from models import Role, TransactionType, User


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_TRANSACTION_TYPES = [
    ("EXPENSE", "Expense"),
    ("INCOME", "Income"),
]


def seed_transaction_types(session: Session) -> int:
    existing = set(session.scalars(select(TransactionType.machine_name)).all())
    created = 0
    for machine_name, name in DEFAULT_TRANSACTION_TYPES:
        if machine_name in existing:
            continue
        session.add(TransactionType(name=name, machine_name=machine_name))
        created += 1
    session.flush()
    return created


def seed_admin(session: Session, email: str, password: str) -> bool:
    if session.scalar(select(User).where(User.email == email)):
        return False
    session.add(
        User(
            email=email,
            password=hash_password(password),
            name="Administrator",
            role=Role.admin,
        )
    )
    session.flush()
    return True


def seed() -> None:
    settings = get_settings()
    Base.metadata.create_all(get_engine())
    with session_scope() as session:
        created = seed_transaction_types(session)
        logger.info(f"seed: transaction_types_created={created}")
        if settings.admin_email and settings.admin_password:
            if seed_admin(session, settings.admin_email, settings.admin_password):
                logger.info(f"seed: admin_created email={settings.admin_email}")
            else:
                logger.info("seed: admin already exists")
        else:
            logger.info("seed: MONEYBOOK_ADMIN_EMAIL/PASSWORD not set, no admin created")


if __name__ == "__main__":
    seed()
