from __future__ import annotations

import logging
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, TypeVar, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from auth import Identity, can_access, hash_password, read_session_token, verify_password
from config import get_settings
from csv_utils import (
    ImportRow,
    export_transactions,
    import_template,
    parse_amount,
    parse_datetime,
    parse_import_csv,
)
from models import Category, Role, Transaction, TransactionType, User
from schemas import (
    CategoryIn,
    CategoryPatch,
    ImportReport,
    ImportRowResult,
    TransactionIn,
    TransactionPatch,
    TransactionTypeIn,
    TransactionTypePatch,
    UserIn,
    UserPatch,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceError(Exception):
    pass


class Unauthenticated(ServiceError):
    pass


class Forbidden(ServiceError):
    pass


class NotFound(ServiceError, ValueError):
    pass


class InvalidInput(ServiceError, ValueError):
    pass


class CSVParseError(InvalidInput):
    def __init__(self, message: str, details: list[str]) -> None:
        super().__init__(message)
        self.details = details


class Conflict(ServiceError, ValueError):
    pass


class StoreFailure(ServiceError):
    pass


@dataclass
class Page:
    items: list = field(default_factory=list)
    total: int = 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_int(value: Union[int, str, None]) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def page_params(
    skip: Union[int, str, None], take: Union[int, str, None]
) -> tuple[int, int]:
    settings = get_settings()
    skip_value = _to_int(skip)
    if skip_value is None or skip_value < 0:
        skip_value = 0
    take_value = _to_int(take)
    if take_value is None or take_value <= 0:
        take_value = settings.default_page_size
    return skip_value, min(take_value, settings.max_page_size)


def owner_filter(identity: Identity, user_id: Union[int, str, None]) -> Optional[int]:
    """Owner restriction for list-style reads; None means every user."""
    if not identity.is_admin:
        return identity.user_id
    if user_id is None or user_id == "":
        return None
    parsed = _to_int(user_id)
    if parsed is None:
        raise InvalidInput("Invalid userId")
    return parsed


def _commit(session: Session, conflict_message: str) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise Conflict(conflict_message) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("store_failure")
        raise StoreFailure(str(exc)) from exc


def resolve_unique_machine_name(
    session: Session,
    model: type[Union[Category, TransactionType]],
    candidate: str,
    *,
    scope: tuple = (),
    exclude_id: Optional[int] = None,
) -> str:
    """Return ``candidate`` or the first free ``candidate-N`` within ``scope``.

    Each probe is its own existence query. Blank candidates come back
    unchanged; callers only resolve non-blank replacements.
    """
    base = (candidate or "").strip()
    if not base:
        return candidate
    final = base
    counter = 1
    while True:
        stmt = select(model.id).where(model.machine_name == final, *scope)
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        if session.scalar(stmt.limit(1)) is None:
            return final
        final = f"{base}-{counter}"
        counter += 1


def _commit_with_unique_machine_name(
    session: Session, resolve: Callable[[], str], apply: Callable[[str], T]
) -> T:
    # The probe loop is check-then-act; a concurrent writer can take the
    # resolved value first, in which case the unique constraint rejects the
    # commit and the value is resolved again.
    attempts = get_settings().slug_max_attempts
    for attempt in range(1, attempts + 1):
        machine_name = resolve()
        obj = apply(machine_name)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning(
                f"machine_name_conflict: value={machine_name} attempt={attempt}"
            )
            continue
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("store_failure")
            raise StoreFailure(str(exc)) from exc
        session.refresh(obj)
        return obj
    raise Conflict("Could not allocate a unique machineName")


def _clean_text(value: Optional[str], field_name: str) -> str:
    clean = (value or "").strip()
    if not clean:
        raise InvalidInput(f"Field '{field_name}' is required and must be a string.")
    return clean


def resolve_identity(session: Session, token: str) -> Identity:
    claimed = read_session_token(token)
    if claimed is None:
        raise Unauthenticated("Unauthorized")
    user = session.get(User, claimed.user_id)
    if user is None:
        raise Unauthenticated("Unauthorized")
    return Identity(user_id=user.id, role=user.role)


def authenticate(session: Session, email: str, password: str) -> User:
    user = session.scalar(select(User).where(User.email == email.strip()))
    if user is None or not verify_password(password, user.password):
        logger.info(f"login_failed: email={email}")
        raise Unauthenticated("Invalid email or password")
    logger.info(f"login: user_id={user.id}")
    return user


class UserService:
    def __init__(self, session: Session, identity: Identity) -> None:
        self.session = session
        self.identity = identity

    def _require_admin(self) -> None:
        if not self.identity.is_admin:
            raise Forbidden("Forbidden. Admin only.")

    def list(self) -> list[User]:
        if self.identity.is_admin:
            return self.session.scalars(select(User).order_by(User.id)).all()
        return [self.get(self.identity.user_id)]

    def get(self, user_id: int) -> User:
        if not can_access(self.identity, user_id):
            raise Forbidden("Forbidden")
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def create(self, data: UserIn) -> User:
        self._require_admin()
        user = User(
            email=_clean_text(data.email, "email"),
            password=hash_password(data.password),
            name=data.name,
            role=data.role,
        )
        self.session.add(user)
        _commit(self.session, "User with this email already exists")
        self.session.refresh(user)
        logger.info(f"user_created: id={user.id} by={self.identity.user_id}")
        return user

    def update(self, user_id: int, patch: UserPatch) -> User:
        user = self.get(user_id)
        fields = patch.provided()
        if not self.identity.is_admin:
            fields.pop("role", None)
        if "email" in fields:
            user.email = fields["email"].strip()
        if "password" in fields:
            user.password = hash_password(fields["password"])
        if "name" in fields:
            user.name = fields["name"]
        if "role" in fields:
            user.role = Role(fields["role"])
        _commit(self.session, "User with this email already exists")
        self.session.refresh(user)
        return user

    def delete(self, user_id: int) -> None:
        user = self.get(user_id)
        self.session.delete(user)
        _commit(self.session, "User could not be deleted")
        logger.info(f"user_deleted: id={user_id} by={self.identity.user_id}")


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _scope(self) -> tuple:
        return (Category.user_id == self.user_id,)

    def list(self, skip: int = 0, take: int = 5) -> Page:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.id)
            .offset(skip)
            .limit(take)
        )
        total = self.session.execute(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        ).scalar_one()
        return Page(items=list(self.session.scalars(stmt).all()), total=int(total))

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        name = _clean_text(data.name, "name")
        requested = _clean_text(data.machine_name, "machineName")

        def apply(machine_name: str) -> Category:
            category = Category(
                user_id=self.user_id, name=name, machine_name=machine_name
            )
            self.session.add(category)
            return category

        category = _commit_with_unique_machine_name(
            self.session,
            lambda: resolve_unique_machine_name(
                self.session, Category, requested, scope=self._scope()
            ),
            apply,
        )
        logger.info(
            f"category_created: id={category.id} user_id={self.user_id} "
            f"machine_name={category.machine_name}"
        )
        return category

    def update(self, category_id: int, patch: CategoryPatch) -> Category:
        category = self.get(category_id)
        fields = patch.provided()
        name = fields.get("name", "").strip()
        requested = fields.get("machine_name", "").strip()
        if not name and not requested:
            return category

        def apply(machine_name: str) -> Category:
            if name:
                category.name = name
            if requested:
                category.machine_name = machine_name
            return category

        return _commit_with_unique_machine_name(
            self.session,
            lambda: resolve_unique_machine_name(
                self.session,
                Category,
                requested,
                scope=self._scope(),
                exclude_id=category_id,
            )
            if requested
            else category.machine_name,
            apply,
        )

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        used = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category.id
            )
        ).scalar_one()
        if used:
            raise Conflict(
                "Cannot delete category because it is linked to transactions."
            )
        self.session.delete(category)
        _commit(self.session, "Category could not be deleted")
        logger.info(f"category_deleted: id={category_id} user_id={self.user_id}")


class TransactionTypeService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _require_admin(identity: Identity) -> None:
        if not identity.is_admin:
            raise Forbidden("Forbidden. Admin only.")

    def list(self) -> list[TransactionType]:
        stmt = select(TransactionType).order_by(TransactionType.id)
        return self.session.scalars(stmt).all()

    def get(self, type_id: int) -> TransactionType:
        txn_type = self.session.get(TransactionType, type_id)
        if not txn_type:
            raise NotFound("Type not found")
        return txn_type

    def create(self, identity: Identity, data: TransactionTypeIn) -> TransactionType:
        self._require_admin(identity)
        machine_name = _clean_text(data.machine_name, "machineName")
        txn_type = TransactionType(
            name=_clean_text(data.name, "name"), machine_name=machine_name
        )
        self.session.add(txn_type)
        _commit(
            self.session,
            f"Transaction type with machineName '{machine_name}' already exists",
        )
        self.session.refresh(txn_type)
        logger.info(
            f"transaction_type_created: id={txn_type.id} machine_name={machine_name}"
        )
        return txn_type

    def update(
        self, identity: Identity, type_id: int, patch: TransactionTypePatch
    ) -> TransactionType:
        self._require_admin(identity)
        txn_type = self.get(type_id)
        fields = patch.provided()
        name = fields.get("name", "").strip()
        requested = fields.get("machine_name", "").strip()
        if not name and not requested:
            return txn_type

        def apply(machine_name: str) -> TransactionType:
            if name:
                txn_type.name = name
            if requested:
                txn_type.machine_name = machine_name
            return txn_type

        return _commit_with_unique_machine_name(
            self.session,
            lambda: resolve_unique_machine_name(
                self.session, TransactionType, requested, exclude_id=type_id
            )
            if requested
            else txn_type.machine_name,
            apply,
        )

    def delete(self, identity: Identity, type_id: int) -> None:
        self._require_admin(identity)
        txn_type = self.get(type_id)
        self.session.delete(txn_type)
        _commit(self.session, "Transaction type is still referenced by transactions")
        logger.info(f"transaction_type_deleted: id={type_id}")


class TransactionService:
    def __init__(self, session: Session, identity: Identity) -> None:
        self.session = session
        self.identity = identity

    def list(
        self,
        skip: int = 0,
        take: int = 5,
        user_id: Union[int, str, None] = None,
    ) -> Page:
        owner = owner_filter(self.identity, user_id)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.type))
            .order_by(Transaction.id.desc())
            .offset(skip)
            .limit(take)
        )
        count_stmt = select(func.count(Transaction.id))
        if owner is not None:
            stmt = stmt.where(Transaction.user_id == owner)
            count_stmt = count_stmt.where(Transaction.user_id == owner)
        total = self.session.execute(count_stmt).scalar_one()
        return Page(items=list(self.session.scalars(stmt).all()), total=int(total))

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.type))
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        if not can_access(self.identity, txn.user_id):
            raise Forbidden("Forbidden")
        return txn

    def _category_for(self, category_id: int, owner_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != owner_id:
            raise NotFound("Category not found")
        return category

    def _type_for(self, type_id: int) -> TransactionType:
        txn_type = self.session.get(TransactionType, type_id)
        if not txn_type:
            raise NotFound("Type not found")
        return txn_type

    def create(self, data: TransactionIn) -> Transaction:
        if not data.category_id or not data.type_id or data.amount is None:
            raise InvalidInput("categoryId, typeId, amount are required")
        owner_id = self.identity.user_id
        if self.identity.is_admin and data.user_id is not None:
            owner_id = data.user_id
            if self.session.get(User, owner_id) is None:
                raise NotFound("User not found")
        category = self._category_for(data.category_id, owner_id)
        txn_type = self._type_for(data.type_id)

        txn_date = utcnow()
        if data.date:
            try:
                txn_date = parse_datetime(data.date)
            except ValueError:
                txn_date = utcnow()

        txn = Transaction(
            user_id=owner_id,
            category_id=category.id,
            type_id=txn_type.id,
            amount=data.amount,
            date=txn_date,
            description=data.description or "",
        )
        self.session.add(txn)
        _commit(self.session, "Transaction could not be created")
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} user_id={owner_id} "
            f"by={self.identity.user_id}"
        )
        return txn

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id)
        fields = patch.provided()
        if "category_id" in fields:
            self._category_for(fields["category_id"], txn.user_id)
        if "type_id" in fields:
            self._type_for(fields["type_id"])
        if "date" in fields:
            try:
                fields["date"] = parse_datetime(fields["date"])
            except ValueError as exc:
                raise InvalidInput("Invalid date") from exc
        if not fields:
            return txn

        for name, value in fields.items():
            setattr(txn, name, value)
        _commit(self.session, "Transaction could not be updated")
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        _commit(self.session, "Transaction could not be deleted")
        logger.info(
            f"transaction_deleted: id={transaction_id} by={self.identity.user_id}"
        )


class CSVService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def _category_lookup(self) -> dict[str, int]:
        stmt = select(Category.id, Category.name, Category.machine_name).where(
            Category.user_id == self.user_id
        )
        by_machine_name: dict[str, int] = {}
        by_name: dict[str, int] = {}
        for row in self.session.execute(stmt):
            by_machine_name.setdefault(row.machine_name.lower(), row.id)
            by_name.setdefault(row.name.lower(), row.id)
        return {**by_machine_name, **by_name}

    def _type_lookup(self) -> dict[str, int]:
        stmt = select(TransactionType.id, TransactionType.machine_name)
        return {row.machine_name.upper(): row.id for row in self.session.execute(stmt)}

    def _resolve(
        self,
        row: ImportRow,
        categories: dict[str, int],
        types: dict[str, int],
    ) -> Union[Transaction, str]:
        if not row.category or not row.type or not row.amount:
            return "missing category, type or amount"
        category_id = categories.get(row.category.lower())
        if not category_id:
            return f"unknown category '{row.category}'"
        type_id = types.get(row.type)
        if not type_id:
            return f"unknown type '{row.type}'"
        try:
            amount = parse_amount(row.amount)
        except ValueError:
            return f"invalid amount '{row.amount}'"
        txn_date = utcnow()
        if row.date:
            try:
                txn_date = parse_datetime(row.date)
            except ValueError:
                txn_date = utcnow()
        return Transaction(
            user_id=self.user_id,
            category_id=category_id,
            type_id=type_id,
            amount=amount,
            date=txn_date,
            description=row.description or None,
        )

    def import_csv(self, content: str) -> ImportReport:
        if not content or not content.strip():
            raise InvalidInput("Empty CSV")
        rows, errors = parse_import_csv(content)
        if errors:
            logger.warning(
                f"csv_import_rejected: user_id={self.user_id} errors={len(errors)}"
            )
            raise CSVParseError("CSV parse error", errors)

        categories = self._category_lookup()
        types = self._type_lookup()
        results: list[ImportRowResult] = []
        created: list[tuple[ImportRowResult, Transaction]] = []
        for row in rows:
            outcome = self._resolve(row, categories, types)
            if isinstance(outcome, str):
                results.append(
                    ImportRowResult(row=row.line, status="skipped", reason=outcome)
                )
                continue
            result = ImportRowResult(row=row.line, status="created")
            results.append(result)
            created.append((result, outcome))

        self.session.add_all([txn for _, txn in created])
        _commit(self.session, "Transactions could not be imported")
        for result, txn in created:
            result.id = txn.id

        report = ImportReport(
            message="Import complete",
            created_count=len(created),
            skipped_count=len(results) - len(created),
            rows=results,
        )
        logger.info(
            f"csv_import: user_id={self.user_id} created={report.created_count} "
            f"skipped={report.skipped_count}"
        )
        return report

    def export(self) -> str:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.id.asc())
        )
        return export_transactions(self.session.scalars(stmt).all())

    def template(self) -> str:
        types = TransactionTypeService(self.session).list()
        return import_template(t.machine_name for t in types)


class MetricsService:
    def __init__(self, session: Session, identity: Identity) -> None:
        self.session = session
        self.identity = identity

    def monthly_overview(
        self,
        year: Optional[int] = None,
        month: Optional[int] = None,
        user_id: Union[int, str, None] = None,
    ) -> dict[str, object]:
        today = utcnow()
        year = year or today.year
        month = month or today.month
        if not 1 <= month <= 12 or not 1970 <= year <= 3000:
            raise InvalidInput("Invalid year or month")
        owner = owner_filter(self.identity, user_id)

        days = monthrange(year, month)[1]
        start = datetime(year, month, 1)
        end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.type))
            .where(Transaction.date >= start, Transaction.date < end)
            .order_by(Transaction.date, Transaction.id)
        )
        if owner is not None:
            stmt = stmt.where(Transaction.user_id == owner)

        daily: dict[str, list[Decimal]] = {
            t.machine_name: [Decimal("0")] * days
            for t in TransactionTypeService(self.session).list()
        }
        by_category: dict[int, dict[str, object]] = {}
        for txn in self.session.scalars(stmt).all():
            series = daily.setdefault(txn.type.machine_name, [Decimal("0")] * days)
            series[txn.date.day - 1] += txn.amount
            entry = by_category.setdefault(
                txn.category_id,
                {
                    "category_id": txn.category_id,
                    "name": txn.category.name,
                    "count": 0,
                    "total": Decimal("0"),
                },
            )
            entry["count"] += 1
            entry["total"] += txn.amount

        return {
            "year": year,
            "month": month,
            "days": days,
            "daily": daily,
            "categories": sorted(
                by_category.values(), key=lambda item: (-item["count"], item["name"])
            ),
        }
