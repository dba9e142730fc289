from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from models import AMOUNT_PRECISION, AMOUNT_SCALE, Role


JsonDecimal = Annotated[
    Decimal, PlainSerializer(float, return_type=float, when_used="json")
]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class PatchModel(CamelModel):
    """Partial update payload.

    Keys whose JSON value does not have the expected type are dropped instead
    of failing validation, so only well-typed fields are applied. Blank
    strings count as absent unless the field is listed in ``blank_allowed``.
    """

    expected_types: ClassVar[dict[str, tuple[type, ...]]] = {}
    blank_allowed: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="before")
    @classmethod
    def _drop_mistyped(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        cleaned: dict[str, Any] = {}
        for key, value in data.items():
            field = _field_for_key(cls, key)
            if field is None:
                continue
            expected = cls.expected_types.get(field)
            if expected is None:
                cleaned[key] = value
                continue
            if isinstance(value, bool) and bool not in expected:
                continue
            if not isinstance(value, expected):
                continue
            if (
                isinstance(value, str)
                and not value.strip()
                and field not in cls.blank_allowed
            ):
                continue
            cleaned[key] = value
        return cleaned

    def provided(self) -> dict[str, Any]:
        values = {name: getattr(self, name) for name in self.model_fields_set}
        return {name: value for name, value in values.items() if value is not None}


def _field_for_key(model: type[BaseModel], key: str) -> Optional[str]:
    for name, info in model.model_fields.items():
        if key == name or key == info.alias:
            return name
    return None


class LoginIn(CamelModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)


class UserIn(CamelModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)
    name: Optional[str] = Field(default=None, max_length=120)
    role: Role = Role.user

    @field_validator("role", mode="before")
    @classmethod
    def _unknown_role_is_user(cls, value: Any) -> Any:
        return Role.admin if value in (Role.admin, Role.admin.value) else Role.user


class UserPatch(PatchModel):
    expected_types: ClassVar[dict[str, tuple[type, ...]]] = {
        "email": (str,),
        "password": (str,),
        "name": (str,),
        "role": (str,),
    }
    blank_allowed: ClassVar[frozenset[str]] = frozenset({"name"})

    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=120)
    role: Optional[Role] = None

    @field_validator("role", mode="before")
    @classmethod
    def _ignore_unknown_role(cls, value: Any) -> Any:
        return value if value in (Role.admin.value, Role.user.value) else None


class UserOut(CamelModel):
    id: int
    email: str
    name: Optional[str]
    role: Role


class CategoryIn(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    machine_name: str = Field(..., min_length=1, max_length=120)


class CategoryPatch(PatchModel):
    expected_types: ClassVar[dict[str, tuple[type, ...]]] = {
        "name": (str,),
        "machine_name": (str,),
    }

    name: Optional[str] = Field(default=None, max_length=100)
    machine_name: Optional[str] = Field(default=None, max_length=120)


class CategoryOut(CamelModel):
    id: int
    name: str
    machine_name: str
    user_id: int


class CategoryPage(CamelModel):
    items: list[CategoryOut]
    total: int


class TransactionTypeIn(CategoryIn):
    pass


class TransactionTypePatch(CategoryPatch):
    pass


class TransactionTypeOut(CamelModel):
    id: int
    name: str
    machine_name: str


class TransactionIn(CamelModel):
    user_id: Optional[int] = None
    category_id: Optional[int] = None
    type_id: Optional[int] = None
    amount: Optional[Decimal] = Field(
        default=None, max_digits=AMOUNT_PRECISION, decimal_places=AMOUNT_SCALE
    )
    date: Optional[str] = None
    description: Optional[str] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def _numeric_user_only(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return None

    @field_validator("date", "description", mode="before")
    @classmethod
    def _text_only(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    @model_validator(mode="after")
    def _require_references(self) -> "TransactionIn":
        if not self.category_id or not self.type_id or self.amount is None:
            raise ValueError("categoryId, typeId, amount are required")
        return self


class TransactionPatch(PatchModel):
    expected_types: ClassVar[dict[str, tuple[type, ...]]] = {
        "category_id": (int,),
        "type_id": (int,),
        "amount": (int, float),
        "date": (str,),
        "description": (str,),
    }
    blank_allowed: ClassVar[frozenset[str]] = frozenset({"description"})

    category_id: Optional[int] = None
    type_id: Optional[int] = None
    amount: Optional[Decimal] = Field(
        default=None, max_digits=AMOUNT_PRECISION, decimal_places=AMOUNT_SCALE
    )
    date: Optional[str] = None
    description: Optional[str] = None


class TransactionOut(CamelModel):
    id: int
    user_id: int
    category_id: int
    type_id: int
    amount: JsonDecimal
    date: datetime
    description: Optional[str]
    category: Optional[CategoryOut] = None
    type: Optional[TransactionTypeOut] = None


class TransactionPage(CamelModel):
    items: list[TransactionOut]
    total: int


class ImportRowResult(CamelModel):
    row: int
    status: Literal["created", "skipped"]
    reason: Optional[str] = None
    id: Optional[int] = None


class ImportReport(CamelModel):
    message: str = "Import complete"
    created_count: int = 0
    skipped_count: int = 0
    rows: list[ImportRowResult] = Field(default_factory=list)


class MessageOut(CamelModel):
    message: str


class LoginOut(CamelModel):
    token: str
    user: UserOut


class CategoryBreakdown(CamelModel):
    category_id: int
    name: str
    count: int
    total: JsonDecimal


class MonthlyOverview(CamelModel):
    year: int
    month: int
    days: int
    daily: dict[str, list[JsonDecimal]]
    categories: list[CategoryBreakdown]
