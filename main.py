import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import SESSION_COOKIE, Identity, issue_session_token, token_from_headers
from config import get_settings
from database import get_db
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryPage,
    CategoryPatch,
    ImportReport,
    LoginIn,
    LoginOut,
    MessageOut,
    MonthlyOverview,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionPatch,
    TransactionTypeIn,
    TransactionTypeOut,
    TransactionTypePatch,
    UserIn,
    UserOut,
    UserPatch,
)
from services import (
    CategoryService,
    Conflict,
    CSVParseError,
    CSVService,
    Forbidden,
    InvalidInput,
    MetricsService,
    NotFound,
    ServiceError,
    TransactionService,
    TransactionTypeService,
    Unauthenticated,
    UserService,
    authenticate,
    page_params,
    resolve_identity,
)


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Moneybook")

ERROR_STATUS: list[tuple[type[ServiceError], int]] = [
    (Unauthenticated, 401),
    (Forbidden, 403),
    (NotFound, 404),
    (InvalidInput, 400),
    (Conflict, 409),
]


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == 500:
        logger.error(f"request_failed: path={request.url.path} error={exc}")
    content: dict[str, object] = {"error": str(exc)}
    if isinstance(exc, CSVParseError):
        content["details"] = exc.details
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400, content={"error": "Invalid request body", "details": details}
    )


def get_identity(request: Request, db: Session = Depends(get_db)) -> Identity:
    token = token_from_headers(
        request.headers.get("Authorization"), request.cookies.get(SESSION_COOKIE)
    )
    return resolve_identity(db, token)


def csv_attachment(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/auth/login", response_model=LoginOut)
def login(payload: LoginIn, response: Response, db: Session = Depends(get_db)):
    user = authenticate(db, payload.email, payload.password)
    identity = Identity(user_id=user.id, role=user.role)
    token = issue_session_token(identity)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=get_settings().session_max_age_hours * 3600,
        httponly=True,
        samesite="lax",
    )
    return LoginOut(token=token, user=UserOut.model_validate(user))


@app.post("/auth/logout", response_model=MessageOut)
def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return MessageOut(message="Logged out")


@app.get("/auth/me", response_model=UserOut)
def me(identity: Identity = Depends(get_identity), db: Session = Depends(get_db)):
    user = UserService(db, identity).get(identity.user_id)
    return UserOut.model_validate(user)


@app.get("/users", response_model=list[UserOut])
def list_users(
    identity: Identity = Depends(get_identity), db: Session = Depends(get_db)
):
    return [UserOut.model_validate(u) for u in UserService(db, identity).list()]


@app.post("/users", response_model=UserOut, status_code=201)
def create_user(
    payload: UserIn,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return UserOut.model_validate(UserService(db, identity).create(payload))


@app.get("/users/{user_id}", response_model=UserOut)
def get_user(
    user_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return UserOut.model_validate(UserService(db, identity).get(user_id))


@app.patch("/users/{user_id}", response_model=UserOut)
def update_user(
    user_id: int,
    payload: UserPatch,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return UserOut.model_validate(UserService(db, identity).update(user_id, payload))


@app.delete("/users/{user_id}", response_model=MessageOut)
def delete_user(
    user_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    UserService(db, identity).delete(user_id)
    return MessageOut(message="User deleted")


@app.get("/categories", response_model=CategoryPage)
def list_categories(
    skip: Optional[str] = None,
    take: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    skip_value, take_value = page_params(skip, take)
    page = CategoryService(db, identity.user_id).list(skip_value, take_value)
    return CategoryPage(
        items=[CategoryOut.model_validate(c) for c in page.items], total=page.total
    )


@app.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, identity.user_id).create(payload)
    return CategoryOut.model_validate(category)


@app.get("/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, identity.user_id).get(category_id)
    return CategoryOut.model_validate(category)


@app.patch("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryPatch,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    category = CategoryService(db, identity.user_id).update(category_id, payload)
    return CategoryOut.model_validate(category)


@app.delete("/categories/{category_id}", response_model=MessageOut)
def delete_category(
    category_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    CategoryService(db, identity.user_id).delete(category_id)
    return MessageOut(message="Category deleted")


@app.get("/transaction-types", response_model=list[TransactionTypeOut])
def list_transaction_types(db: Session = Depends(get_db)):
    types = TransactionTypeService(db).list()
    return [TransactionTypeOut.model_validate(t) for t in types]


@app.post("/transaction-types", response_model=TransactionTypeOut, status_code=201)
def create_transaction_type(
    payload: TransactionTypeIn,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    txn_type = TransactionTypeService(db).create(identity, payload)
    return TransactionTypeOut.model_validate(txn_type)


@app.get("/transaction-types/{type_id}", response_model=TransactionTypeOut)
def get_transaction_type(type_id: int, db: Session = Depends(get_db)):
    return TransactionTypeOut.model_validate(TransactionTypeService(db).get(type_id))


@app.patch("/transaction-types/{type_id}", response_model=TransactionTypeOut)
def update_transaction_type(
    type_id: int,
    payload: TransactionTypePatch,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    txn_type = TransactionTypeService(db).update(identity, type_id, payload)
    return TransactionTypeOut.model_validate(txn_type)


@app.delete("/transaction-types/{type_id}", response_model=MessageOut)
def delete_transaction_type(
    type_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    TransactionTypeService(db).delete(identity, type_id)
    return MessageOut(message="Transaction type deleted")


@app.get("/transactions/export")
def export_transactions_endpoint(
    identity: Identity = Depends(get_identity), db: Session = Depends(get_db)
):
    csv_text = CSVService(db, identity.user_id).export()
    return csv_attachment(csv_text, "transactions-export.csv")


@app.get("/transactions/import/template")
def import_template_endpoint(db: Session = Depends(get_db)):
    csv_text = CSVService(db).template()
    return csv_attachment(csv_text, "import-template.csv")


@app.post("/transactions/import", response_model=ImportReport)
async def import_transactions(
    request: Request,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    raw = await request.body()
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise InvalidInput("CSV must be UTF-8 encoded") from exc
    return CSVService(db, identity.user_id).import_csv(content)


@app.get("/transactions/monthly", response_model=MonthlyOverview)
def monthly_overview(
    year: Optional[int] = None,
    month: Optional[int] = None,
    userId: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    data = MetricsService(db, identity).monthly_overview(year, month, userId)
    return MonthlyOverview.model_validate(data)


@app.get("/transactions", response_model=TransactionPage)
def list_transactions(
    skip: Optional[str] = None,
    take: Optional[str] = None,
    userId: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    skip_value, take_value = page_params(skip, take)
    page = TransactionService(db, identity).list(skip_value, take_value, userId)
    return TransactionPage(
        items=[TransactionOut.model_validate(t) for t in page.items], total=page.total
    )


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, identity).create(payload)
    return TransactionOut.model_validate(txn)


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return TransactionOut.model_validate(
        TransactionService(db, identity).get(transaction_id)
    )


@app.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, identity).update(transaction_id, payload)
    return TransactionOut.model_validate(txn)


@app.delete("/transactions/{transaction_id}", response_model=MessageOut)
def delete_transaction(
    transaction_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    TransactionService(db, identity).delete(transaction_id)
    return MessageOut(message="Transaction deleted")


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
