from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from sqlalchemy import delete, extract, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from cache import CATEGORIES_KEY, Cache, analytics_key
from config import Settings, get_settings
from errors import (
    DuplicateEmail,
    DuplicateName,
    InvalidCategory,
    InvalidCredentials,
    NotFound,
    Unauthenticated,
    ValidationError,
)
from models import Category, Role, Transaction, TransactionType, User
from periods import month_key, trailing_months
from policy import Action, Identity, Resource, require
from schemas import (
    MAX_ID,
    CategoryIn,
    LoginIn,
    RegisterIn,
    RoleUpdateIn,
    TransactionIn,
    TransactionUpdateIn,
)
from security import hash_password, issue_token, read_token, verify_password


logger = logging.getLogger(__name__)

Payload = Union[Mapping[str, object], BaseModel]

# Largest amount a transaction can hold: 12 digits, 2 of them decimals.
MAX_AMOUNT = Decimal("9999999999.99")


def cents_from_amount(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_amount(cents: int) -> float:
    return cents / 100


def _parse(model: type[BaseModel], data: Payload):
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except SchemaError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid input")
        raise ValidationError(f"{field}: {message}" if field else message) from exc


def user_to_dict(user: User) -> dict[str, object]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value,
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }


def category_to_dict(category: Category) -> dict[str, object]:
    return {"id": category.id, "name": category.name}


def transaction_to_dict(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "userId": txn.user_id,
        "amount": cents_to_amount(txn.amount_cents),
        "type": txn.type.value,
        "categoryId": txn.category_id,
        "category": category_to_dict(txn.category) if txn.category else None,
        "description": txn.description,
        "notes": txn.notes,
        "date": txn.date.isoformat(),
        "createdAt": txn.created_at.isoformat() if txn.created_at else None,
        "updatedAt": txn.updated_at.isoformat() if txn.updated_at else None,
    }


def _to_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Pagination:
    page: int = 1
    per_page: int = 10

    MIN_PER_PAGE = 5
    MAX_PER_PAGE = 200
    DEFAULT_PER_PAGE = 10

    @classmethod
    def from_params(cls, page: object = None, per_page: object = None) -> Pagination:
        clean_page = min(MAX_ID, max(1, _to_int(page, 1)))
        requested = _to_int(per_page, cls.DEFAULT_PER_PAGE) or cls.DEFAULT_PER_PAGE
        clean_per_page = min(cls.MAX_PER_PAGE, max(cls.MIN_PER_PAGE, requested))
        return cls(page=clean_page, per_page=clean_per_page)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


SORT_COLUMNS = {
    "date": Transaction.date,
    "amount": Transaction.amount_cents,
    "createdAt": Transaction.created_at,
}


@dataclass(frozen=True)
class Sort:
    key: str = "date"
    descending: bool = True

    @classmethod
    def from_params(cls, sort_by: Optional[str] = None, sort_dir: Optional[str] = None) -> Sort:
        key = sort_by if sort_by in SORT_COLUMNS else "date"
        descending = (sort_dir or "desc").lower() != "asc"
        return cls(key=key, descending=descending)


@dataclass
class Page:
    items: list
    pagination: Pagination
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.pagination.per_page)

    def meta(self) -> dict[str, int]:
        return {
            "page": self.pagination.page,
            "perPage": self.pagination.per_page,
            "total": self.total,
            "totalPages": self.total_pages,
        }


@dataclass
class TransactionFilters:
    query: Optional[str] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    user_id: Optional[int] = None


class AuthService:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def _find_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    def _token_for(self, user: User) -> str:
        return issue_token(user.id, user.role.value, self.settings.secret_key)

    def register(self, data: Payload) -> tuple[User, str]:
        payload: RegisterIn = _parse(RegisterIn, data)
        email = payload.email.lower()
        if self._find_by_email(email):
            raise DuplicateEmail()

        user = User(
            name=payload.name,
            email=email,
            password_hash=hash_password(payload.password, self.settings.bcrypt_rounds),
            role=payload.role or Role.user,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateEmail() from exc
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id} role={user.role.value}")
        return user, self._token_for(user)

    def login(self, data: Payload) -> tuple[User, str]:
        try:
            payload: LoginIn = _parse(LoginIn, data)
        except ValidationError as exc:
            raise InvalidCredentials() from exc
        user = self._find_by_email(payload.email)
        if not user or not verify_password(payload.password, user.password_hash):
            logger.info("login_failed")
            raise InvalidCredentials()
        return user, self._token_for(user)

    def resolve(self, token: Optional[str]) -> Identity:
        data = read_token(
            token,
            max_age_secs=self.settings.token_ttl_secs,
            secret_key=self.settings.secret_key,
        )
        user = self.session.get(User, data["id"])
        if not user:
            raise Unauthenticated("Invalid token")
        return Identity(id=user.id, email=user.email, role=user.role, name=user.name)


class CategoryService:
    def __init__(
        self, session: Session, cache: Cache, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.cache = cache
        self.settings = settings or get_settings()

    def list_all(self, identity: Identity) -> tuple[list[dict[str, object]], bool]:
        require(identity, Resource.category, Action.read)
        cached = self.cache.get(CATEGORIES_KEY)
        if cached is not None:
            return cached, True
        categories = self.session.scalars(select(Category).order_by(Category.name)).all()
        data = [category_to_dict(c) for c in categories]
        self.cache.set(CATEGORIES_KEY, data, self.settings.categories_ttl_secs)
        return data, False

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFound("Category not found.")
        return category

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Category.id).where(func.lower(Category.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise DuplicateName("Category name already exists")

    def _owners_of(self, category_id: int) -> list[int]:
        return list(
            self.session.scalars(
                select(Transaction.user_id)
                .where(Transaction.category_id == category_id)
                .distinct()
            ).all()
        )

    def _invalidate(self, affected_user_ids: list[int]) -> None:
        self.cache.delete(CATEGORIES_KEY)
        for user_id in affected_user_ids:
            self.cache.delete(analytics_key(user_id))

    def create(self, identity: Identity, data: Payload) -> Category:
        require(
            identity,
            Resource.category,
            Action.create,
            message="Only admin can create categories.",
        )
        payload: CategoryIn = _parse(CategoryIn, data)
        self._ensure_unique(payload.name)

        category = Category(name=payload.name)
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateName("Category name already exists") from exc
        self.session.refresh(category)
        self._invalidate([])
        logger.info(f"category_created: category_id={category.id} by={identity.id}")
        return category

    def update(self, identity: Identity, category_id: int, data: Payload) -> Category:
        require(
            identity,
            Resource.category,
            Action.update,
            message="Only admin can update categories.",
        )
        category = self.get(category_id)
        payload: CategoryIn = _parse(CategoryIn, data)
        self._ensure_unique(payload.name, exclude_id=category.id)

        category.name = payload.name
        affected = self._owners_of(category.id)
        self.session.commit()
        self.session.refresh(category)
        self._invalidate(affected)
        return category

    def delete(self, identity: Identity, category_id: int) -> None:
        require(
            identity,
            Resource.category,
            Action.delete,
            message="Only admin can delete categories.",
        )
        category = self.get(category_id)
        affected = self._owners_of(category.id)

        # Referencing transactions become uncategorized.
        self.session.execute(
            update(Transaction)
            .where(Transaction.category_id == category.id)
            .values(category_id=None)
        )
        self.session.delete(category)
        self.session.commit()
        self._invalidate(affected)
        logger.info(
            f"category_deleted: category_id={category_id} by={identity.id} "
            f"uncategorized_owners={len(affected)}"
        )


class TransactionService:
    def __init__(
        self,
        session: Session,
        cache: Cache,
        *,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.cache = cache
        self._today = today

    def today(self) -> date:
        return self._today or date.today()

    def _category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise InvalidCategory()
        return category

    def _load(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id)
        )
        if not txn:
            raise NotFound("Transaction not found.")
        return txn

    def _invalidate(self, owner_id: int) -> None:
        self.cache.delete(analytics_key(owner_id))

    def create(self, identity: Identity, data: Payload) -> Transaction:
        require(
            identity,
            Resource.transaction,
            Action.create,
            owner_user_id=identity.id,
            message="Insufficient permissions to create transactions.",
        )
        payload: TransactionIn = _parse(TransactionIn, data)
        category = (
            self._category(payload.category_id)
            if payload.category_id is not None
            else None
        )

        txn = Transaction(
            user_id=identity.id,
            amount_cents=cents_from_amount(payload.amount),
            type=payload.type,
            category=category,
            description=payload.description or None,
            notes=payload.notes or None,
            date=payload.date or self.today(),
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        self._invalidate(txn.user_id)
        logger.info(
            f"transaction_created: id={txn.id} user_id={txn.user_id} type={txn.type.value}"
        )
        return txn

    def get(self, identity: Identity, transaction_id: int) -> Transaction:
        txn = self._load(transaction_id)
        require(
            identity,
            Resource.transaction,
            Action.read,
            owner_user_id=txn.user_id,
            message="Not authorized to view this transaction.",
        )
        return txn

    def update(
        self, identity: Identity, transaction_id: int, data: Payload
    ) -> Transaction:
        require(
            identity,
            Resource.transaction,
            Action.update,
            message="Insufficient permissions to update transactions.",
        )
        txn = self._load(transaction_id)
        require(
            identity,
            Resource.transaction,
            Action.update,
            owner_user_id=txn.user_id,
            message="Not authorized to update this transaction.",
        )
        payload: TransactionUpdateIn = _parse(TransactionUpdateIn, data)
        fields = payload.model_fields_set
        category = None
        if "category_id" in fields and payload.category_id is not None:
            category = self._category(payload.category_id)

        if payload.amount is not None:
            txn.amount_cents = cents_from_amount(payload.amount)
        if payload.type is not None:
            txn.type = payload.type
        if "category_id" in fields:
            txn.category = category
        if "description" in fields:
            txn.description = payload.description or None
        if "notes" in fields:
            txn.notes = payload.notes or None
        if payload.date is not None:
            txn.date = payload.date

        self.session.commit()
        self.session.refresh(txn)
        # The owner's analytics changed, whoever made the edit.
        self._invalidate(txn.user_id)
        return txn

    def delete(self, identity: Identity, transaction_id: int) -> None:
        require(
            identity,
            Resource.transaction,
            Action.delete,
            message="Insufficient permissions to delete transactions.",
        )
        txn = self._load(transaction_id)
        require(
            identity,
            Resource.transaction,
            Action.delete,
            owner_user_id=txn.user_id,
            message="Not authorized to delete this transaction.",
        )
        owner_id = txn.user_id
        self.session.delete(txn)
        self.session.commit()
        self._invalidate(owner_id)
        logger.info(f"transaction_deleted: id={transaction_id} user_id={owner_id}")

    def list(
        self,
        identity: Identity,
        filters: Optional[TransactionFilters] = None,
        pagination: Optional[Pagination] = None,
        sort: Optional[Sort] = None,
    ) -> Page:
        require(identity, Resource.transaction, Action.read)
        filters = filters or TransactionFilters()
        pagination = pagination or Pagination()
        sort = sort or Sort()

        conditions = []
        if not identity.is_admin:
            conditions.append(Transaction.user_id == identity.id)
        elif filters.user_id is not None:
            conditions.append(Transaction.user_id == filters.user_id)
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.category_id is not None:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.min_amount_cents is not None:
            conditions.append(Transaction.amount_cents >= filters.min_amount_cents)
        if filters.max_amount_cents is not None:
            conditions.append(Transaction.amount_cents <= filters.max_amount_cents)
        if filters.date_from is not None:
            conditions.append(Transaction.date >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(Transaction.date <= filters.date_to)
        if filters.query:
            needle = filters.query.strip().lower()
            conditions.append(
                or_(
                    func.lower(func.coalesce(Transaction.description, "")).contains(
                        needle, autoescape=True
                    ),
                    func.lower(func.coalesce(Transaction.notes, "")).contains(
                        needle, autoescape=True
                    ),
                )
            )

        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            or 0
        )

        column = SORT_COLUMNS[sort.key]
        order = (
            (column.desc(), Transaction.id.desc())
            if sort.descending
            else (column.asc(), Transaction.id.asc())
        )
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(*conditions)
            .order_by(*order)
            .offset(pagination.offset)
            .limit(pagination.per_page)
        )
        items = self.session.scalars(stmt).all()
        return Page(items=list(items), pagination=pagination, total=total)


class AnalyticsService:
    """Per-user financial summaries, memoized in the cache."""

    def __init__(
        self,
        session: Session,
        cache: Cache,
        settings: Optional[Settings] = None,
        *,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.cache = cache
        self.settings = settings or get_settings()
        self._today = today

    def target_user_id(self, identity: Identity, user_id: Optional[int] = None) -> int:
        target = identity.id
        if user_id is not None and identity.is_admin and user_id != identity.id:
            if not self.session.get(User, user_id):
                raise NotFound("User not found.")
            target = user_id
        require(identity, Resource.analytics, Action.read, owner_user_id=target)
        return target

    def stats(
        self, identity: Identity, user_id: Optional[int] = None
    ) -> tuple[dict[str, object], bool]:
        target = self.target_user_id(identity, user_id)
        key = analytics_key(target)
        cached = self.cache.get(key)
        if cached is not None:
            return cached, True

        snapshot = self.snapshot(target)
        self.cache.set(key, snapshot, self.settings.analytics_ttl_secs)
        return snapshot, False

    def chart(self, identity: Identity, user_id: Optional[int] = None) -> dict[str, object]:
        """Dashboard chart series over all of the user's history.

        Unlike ``stats`` this is neither windowed nor expense-only: categories
        and months sum every transaction. Not cached.
        """
        target = self.target_user_id(identity, user_id)
        return chart_from_rows(self._grouped_rows(target))

    def _grouped_rows(self, user_id: int) -> list:
        year = extract("year", Transaction.date).label("year")
        month = extract("month", Transaction.date).label("month")
        return list(
            self.session.execute(
                select(
                    year,
                    month,
                    Transaction.type,
                    Transaction.category_id,
                    Category.name.label("category_name"),
                    func.sum(Transaction.amount_cents).label("total_cents"),
                )
                .outerjoin(Category, Transaction.category_id == Category.id)
                .where(Transaction.user_id == user_id)
                .group_by(
                    year, month, Transaction.type, Transaction.category_id, Category.name
                )
            ).all()
        )

    def snapshot(self, user_id: int) -> dict[str, object]:
        """Compute monthTotals, categoryBreakdown and incomeVsExpense.

        All three come from one grouped query, so they always describe the
        same state of the user's transactions.
        """
        window = trailing_months(
            self.settings.analytics_window_months, today=self._today
        )
        months: dict[str, dict[str, int]] = {}
        categories: dict[Optional[int], dict[str, object]] = {}

        rows = self._grouped_rows(user_id)
        for row in rows:
            cents = int(row.total_cents or 0)
            txn_type = TransactionType(row.type)

            if txn_type == TransactionType.expense:
                bucket = categories.setdefault(
                    row.category_id,
                    {"name": row.category_name, "cents": 0},
                )
                bucket["cents"] = int(bucket["cents"]) + cents

            row_month = date(int(row.year), int(row.month), 1)
            if window.start <= row_month <= window.end:
                key = month_key(row_month.year, row_month.month)
                totals = months.setdefault(key, {"income": 0, "expense": 0})
                totals[txn_type.value] += cents

        return {
            "monthTotals": _month_totals(months),
            "categoryBreakdown": _category_breakdown(categories),
            "incomeVsExpense": _type_totals(rows),
        }


def _type_totals(rows: list) -> list[dict[str, object]]:
    by_type: dict[TransactionType, int] = {}
    for row in rows:
        txn_type = TransactionType(row.type)
        by_type[txn_type] = by_type.get(txn_type, 0) + int(row.total_cents or 0)
    return [
        {"type": t.value, "total": cents_to_amount(by_type[t])}
        for t in (TransactionType.income, TransactionType.expense)
        if t in by_type
    ]


def _month_totals(months: dict[str, dict[str, int]]) -> list[dict[str, object]]:
    return [
        {
            "month": key,
            "income": cents_to_amount(months[key]["income"]),
            "expense": cents_to_amount(months[key]["expense"]),
        }
        for key in sorted(months)
    ]


def _category_breakdown(
    categories: dict[Optional[int], dict[str, object]],
) -> list[dict[str, object]]:
    rows = [
        (category_id, bucket["name"], int(bucket["cents"]))
        for category_id, bucket in categories.items()
        if int(bucket["cents"]) > 0
    ]
    rows.sort(key=lambda r: (-r[2], r[1] or ""))
    return [
        {
            "categoryId": category_id,
            "categoryName": name,
            "totalExpense": cents_to_amount(cents),
        }
        for category_id, name, cents in rows
    ]


def chart_from_rows(rows: list) -> dict[str, object]:
    by_category: dict[str, int] = {}
    by_month: dict[str, int] = {}
    for row in rows:
        cents = int(row.total_cents or 0)
        label = row.category_name or "Uncategorized"
        by_category[label] = by_category.get(label, 0) + cents
        key = month_key(int(row.year), int(row.month))
        by_month[key] = by_month.get(key, 0) + cents

    return {
        "categoryDistribution": [
            {"category": label, "total": cents_to_amount(cents)}
            for label, cents in sorted(by_category.items(), key=lambda i: (-i[1], i[0]))
        ],
        "monthlyTrends": [
            {"month": key, "total": cents_to_amount(by_month[key])}
            for key in sorted(by_month)
        ],
        "incomeVsExpenses": _type_totals(rows),
    }


class UserService:
    def __init__(self, session: Session, cache: Cache) -> None:
        self.session = session
        self.cache = cache

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found.")
        return user

    def list(self, identity: Identity, pagination: Optional[Pagination] = None) -> Page:
        require(identity, Resource.user, Action.read, message="Only admin can view users.")
        pagination = pagination or Pagination()
        total = int(self.session.execute(select(func.count(User.id))).scalar_one() or 0)
        users = self.session.scalars(
            select(User)
            .order_by(User.id.asc())
            .offset(pagination.offset)
            .limit(pagination.per_page)
        ).all()
        return Page(items=list(users), pagination=pagination, total=total)

    def update_role(self, identity: Identity, user_id: int, data: Payload) -> User:
        require(
            identity, Resource.user, Action.update, message="Only admin can update roles."
        )
        try:
            payload: RoleUpdateIn = _parse(RoleUpdateIn, data)
        except ValidationError as exc:
            raise ValidationError("Invalid role.") from exc
        user = self.get(user_id)
        previous = user.role
        user.role = payload.role
        self.session.commit()
        self.session.refresh(user)
        logger.info(
            f"user_role_updated: user_id={user.id} from={previous.value} "
            f"to={user.role.value} by={identity.id}"
        )
        return user

    def delete(self, identity: Identity, user_id: int) -> None:
        require(
            identity, Resource.user, Action.delete, message="Only admin can delete users."
        )
        if user_id == identity.id:
            raise ValidationError("Admins cannot delete their own account.")
        user = self.get(user_id)

        self.session.execute(delete(Transaction).where(Transaction.user_id == user.id))
        self.session.delete(user)
        self.session.commit()
        self.cache.delete(analytics_key(user_id))
        logger.info(f"user_deleted: user_id={user_id} by={identity.id}")
