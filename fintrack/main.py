import datetime as dt
from datetime import date, datetime
from decimal import Decimal

import structlog
from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from fintrack import ledger
from fintrack.blob_store import BlobStore, CloudinaryBlobStore, discard_blob
from fintrack.config import DATABASE_URL, FRONTEND_ORIGIN, MAX_UPLOAD_BYTES
from fintrack.errors import ConflictError, FintrackError, NotFoundError, UnauthorizedError, ValidationError
from fintrack.expense_analytics import (
    ExpenseRecord,
    breakdown_expenses,
    compare_expenses,
    normalize_comparison_filter,
)
from fintrack.identity import (
    create_access_token,
    decode_access_token,
    hash_password,
    parse_bearer,
    verify_password,
)
from fintrack.logging_setup import configure_logging
from fintrack.notifications import BroadcastNotifier, Notifier, notify
from fintrack.schema import accounts, bills, build_engine, expenses, goals, metadata, transactions, users

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = build_engine(DATABASE_URL)

_notifier = BroadcastNotifier()
_blob_store = None


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


@app.exception_handler(FintrackError)
async def handle_fintrack_error(request: Request, exc: FintrackError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request.failed", path=request.url.path, status=exc.status_code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def get_notifier() -> Notifier:
    return _notifier


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store is None:
        _blob_store = CloudinaryBlobStore()
    return _blob_store


class TransactionType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


class TransactionMethod:
    values = {"Credit Card", "Debit Card", "Cash", "Bank Transfer"}

    @classmethod
    def validate(cls, value: str) -> str:
        for option in cls.values:
            if option.lower() == value.strip().lower():
                return option
        raise ValueError("Invalid payment method.")


class TransactionStatus:
    values = {"Pending", "Complete"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().capitalize()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction status.")
        return normalized


def _required_text(value: str | None, message: str) -> str:
    cleaned = value.strip() if value else ""
    if not cleaned:
        raise ValueError(message)
    return cleaned


def _optional_text(value: str | None) -> str | None:
    return value.strip() or None if value else None


def _cents(value: Decimal | None) -> Decimal | None:
    # Money columns hold two decimal places; anything finer would be rounded away.
    if value is not None and value != value.quantize(ledger.CENT):
        raise ValueError("Amounts must have at most 2 decimal places.")
    return value


def _reject_empty(changes: dict) -> dict:
    if not changes:
        raise ValueError("No fields to update.")
    return changes


class RegisterPayload(BaseModel):
    email: str
    password: str
    name: str | None = None


class CredentialsPayload(BaseModel):
    email: str
    password: str


class ProfilePayload(BaseModel):
    name: str | None = None


class PasswordChangePayload(BaseModel):
    old_password: str
    new_password: str


class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    avatar_url: str | None = None
    created_at: datetime | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


class AccountPayload(BaseModel):
    account_type: str | None = None
    branch_name: str | None = None
    account_number: str | None = None
    bank_name: str | None = None
    balance: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        message = "All fields are required."
        payload.account_type = _required_text(payload.account_type, message)
        payload.branch_name = _required_text(payload.branch_name, message)
        payload.account_number = _required_text(payload.account_number, message)
        payload.bank_name = _required_text(payload.bank_name, message)
        if payload.balance is None:
            raise ValueError(message)
        if payload.balance < 0:
            raise ValueError("Balance must not be negative.")
        _cents(payload.balance)
        return payload


class AccountUpdatePayload(BaseModel):
    account_type: str | None = None
    branch_name: str | None = None
    account_number: str | None = None
    bank_name: str | None = None
    balance: Decimal | None = None
    expected_version: int | None = None

    def changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True, exclude={"expected_version"})
        for key in ("account_type", "branch_name", "account_number", "bank_name"):
            if key in changes:
                changes[key] = _required_text(changes[key], f"{key} must not be empty.")
        if "balance" in changes:
            if changes["balance"] is None:
                raise ValueError("Balance must not be empty.")
            if changes["balance"] < 0:
                raise ValueError("Balance must not be negative.")
            _cents(changes["balance"])
        return _reject_empty(changes)


class AccountResponse(BaseModel):
    id: int
    user_id: int
    account_type: str
    branch_name: str
    account_number: str
    bank_name: str
    balance: Decimal
    opening_balance: Decimal
    version: int
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    account_id: int | None = None
    type: str | None = None
    amount: Decimal | None = None
    title: str | None = None
    shop: str | None = None
    category: str | None = None
    date: dt.date | None = None
    method: str | None = None
    status: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if payload.account_id is None:
            raise ValueError("Account ID is required.")
        payload.type = TransactionType.validate(payload.type or "")
        if payload.amount is None:
            raise ValueError("Amount is required.")
        _cents(payload.amount)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.title = _optional_text(payload.title)
        payload.shop = _optional_text(payload.shop)
        payload.category = _optional_text(payload.category)
        if payload.method is not None:
            payload.method = TransactionMethod.validate(payload.method)
        if payload.status is not None:
            payload.status = TransactionStatus.validate(payload.status)
        return payload


class TransactionUpdatePayload(BaseModel):
    account_id: int | None = None
    type: str | None = None
    amount: Decimal | None = None
    title: str | None = None
    shop: str | None = None
    category: str | None = None
    date: dt.date | None = None
    method: str | None = None
    status: str | None = None

    def changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True)
        if "account_id" in changes and changes["account_id"] is None:
            raise ValueError("Account ID is required.")
        if "type" in changes:
            changes["type"] = TransactionType.validate(changes["type"] or "")
        if "amount" in changes and (changes["amount"] is None or changes["amount"] <= 0):
            raise ValueError("Amount must be greater than zero.")
        if "amount" in changes:
            _cents(changes["amount"])
        for key in ("title", "shop", "category"):
            if key in changes:
                changes[key] = _optional_text(changes[key])
        if changes.get("method") is not None:
            changes["method"] = TransactionMethod.validate(changes["method"])
        if "status" in changes:
            changes["status"] = TransactionStatus.validate(changes["status"] or "")
        return _reject_empty(changes)


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    account_id: int
    type: str
    amount: Decimal
    title: str | None = None
    shop: str | None = None
    category: str | None = None
    date: dt.date | None = None
    method: str | None = None
    status: str
    receipt_url: str | None = None
    created_at: datetime | None = None


class AccountDetailResponse(AccountResponse):
    transactions: list[TransactionResponse]


class ReconciliationResponse(BaseModel):
    account: AccountResponse
    previous_balance: Decimal
    drift: Decimal


class SummaryResponse(BaseModel):
    total_balance: Decimal
    revenues: Decimal
    expenses: Decimal


class BillPayload(BaseModel):
    vendor: str | None = None
    plan: str | None = None
    due_date: date | None = None
    amount: Decimal | None = None
    last_charge_date: date | None = None

    @classmethod
    def validate_payload(cls, payload: "BillPayload") -> "BillPayload":
        payload.vendor = _required_text(payload.vendor, "Vendor is required.")
        payload.plan = _optional_text(payload.plan)
        if payload.due_date is None:
            raise ValueError("Due date is required.")
        if payload.amount is None:
            raise ValueError("Amount is required.")
        if payload.amount < 0:
            raise ValueError("Amount must not be negative.")
        _cents(payload.amount)
        return payload


class BillUpdatePayload(BaseModel):
    vendor: str | None = None
    plan: str | None = None
    due_date: date | None = None
    amount: Decimal | None = None
    last_charge_date: date | None = None

    def changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True)
        if "vendor" in changes:
            changes["vendor"] = _required_text(changes["vendor"], "Vendor is required.")
        if "plan" in changes:
            changes["plan"] = _optional_text(changes["plan"])
        if "due_date" in changes and changes["due_date"] is None:
            raise ValueError("Due date is required.")
        if "amount" in changes and (changes["amount"] is None or changes["amount"] < 0):
            raise ValueError("Amount must not be negative.")
        if "amount" in changes:
            _cents(changes["amount"])
        return _reject_empty(changes)


class BillResponse(BaseModel):
    id: int
    user_id: int
    vendor: str
    plan: str | None = None
    due_date: date
    amount: Decimal
    logo_url: str | None = None
    last_charge_date: date | None = None
    created_at: datetime | None = None


class GoalPayload(BaseModel):
    title: str | None = None
    target_amount: Decimal | None = None
    current_amount: Decimal = Decimal("0")
    deadline: date | None = None

    @classmethod
    def validate_payload(cls, payload: "GoalPayload") -> "GoalPayload":
        payload.title = _required_text(payload.title, "Title is required.")
        if payload.target_amount is None or payload.target_amount <= 0:
            raise ValueError("Target amount must be greater than zero.")
        if payload.current_amount < 0:
            raise ValueError("Current amount must not be negative.")
        _cents(payload.target_amount)
        _cents(payload.current_amount)
        if payload.deadline is None:
            raise ValueError("Deadline is required.")
        return payload


class GoalUpdatePayload(BaseModel):
    title: str | None = None
    target_amount: Decimal | None = None
    current_amount: Decimal | None = None
    deadline: date | None = None

    def changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True)
        if "title" in changes:
            changes["title"] = _required_text(changes["title"], "Title is required.")
        if "target_amount" in changes and (
            changes["target_amount"] is None or changes["target_amount"] <= 0
        ):
            raise ValueError("Target amount must be greater than zero.")
        if "current_amount" in changes and (
            changes["current_amount"] is None or changes["current_amount"] < 0
        ):
            raise ValueError("Current amount must not be negative.")
        for key in ("target_amount", "current_amount"):
            if key in changes:
                _cents(changes[key])
        if "deadline" in changes and changes["deadline"] is None:
            raise ValueError("Deadline is required.")
        return _reject_empty(changes)


class GoalResponse(BaseModel):
    id: int
    user_id: int
    title: str
    target_amount: Decimal
    current_amount: Decimal
    deadline: date | None = None
    created_at: datetime | None = None


class ExpensePayload(BaseModel):
    title: str | None = None
    category: str | None = None
    amount: Decimal | None = None
    date: dt.date | None = None
    account_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "ExpensePayload") -> "ExpensePayload":
        message = "All fields are required."
        payload.title = _required_text(payload.title, message)
        payload.category = _required_text(payload.category, message)
        if payload.amount is None:
            raise ValueError(message)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        _cents(payload.amount)
        return payload


class ExpenseUpdatePayload(BaseModel):
    title: str | None = None
    category: str | None = None
    amount: Decimal | None = None
    date: dt.date | None = None
    account_id: int | None = None

    def changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True)
        for key in ("title", "category"):
            if key in changes:
                changes[key] = _required_text(changes[key], f"{key.capitalize()} is required.")
        if "amount" in changes and (changes["amount"] is None or changes["amount"] <= 0):
            raise ValueError("Amount must be greater than zero.")
        if "amount" in changes:
            _cents(changes["amount"])
        if "date" in changes and changes["date"] is None:
            raise ValueError("Date must not be empty.")
        return _reject_empty(changes)


class ExpenseItemResponse(BaseModel):
    id: int | None = None
    title: str | None = None
    category: str
    amount: Decimal
    date: dt.date
    account_id: int | None = None


class ExpenseResponse(ExpenseItemResponse):
    user_id: int
    created_at: datetime | None = None


class ComparisonPointResponse(BaseModel):
    label: str
    total: Decimal


class CategoryBreakdownResponse(BaseModel):
    category: str
    total: Decimal
    change_percent: Decimal
    items: list[ExpenseItemResponse]


def get_user_id(authorization: str | None) -> int:
    user_id = decode_access_token(parse_bearer(authorization))
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise UnauthorizedError("User not found.")
    return user_id


def validated(validate, payload):
    try:
        return validate(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def validated_changes(payload) -> dict:
    try:
        return payload.changes()
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def read_image_upload(file: UploadFile) -> bytes:
    content_type = (file.content_type or "").lower()
    if not content_type.startswith("image/"):
        raise ValidationError("Only image uploads are supported.")
    data = file.file.read()
    if not data:
        raise ValidationError("Uploaded file is empty.")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError("Uploaded file is too large.")
    return data


def user_response(row) -> UserResponse:
    return UserResponse(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        avatar_url=row["avatar_url"],
        created_at=row["created_at"],
    )


def expense_record(row) -> ExpenseRecord:
    return ExpenseRecord(
        id=row["id"],
        title=row["title"],
        category=row["category"],
        amount=row["amount"],
        date=row["date"],
        account_id=row["account_id"],
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/users/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterPayload) -> TokenResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise ValidationError("Email and password required.")

    stmt = (
        insert(users)
        .values(
            email=email,
            hashed_password=hash_password(payload.password),
            name=_optional_text(payload.name),
        )
        .returning(*users.c)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise ConflictError("Email already exists.") from exc

    logger.info("user.registered", user_id=row["id"])
    return TokenResponse(access_token=create_access_token(row["id"]), user=user_response(row))


@app.post("/users/login", response_model=TokenResponse)
def login(payload: CredentialsPayload) -> TokenResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise UnauthorizedError("Invalid credentials.")
    return TokenResponse(access_token=create_access_token(row["id"]), user=user_response(row))


@app.get("/users/me", response_model=UserResponse)
def get_profile(authorization: str | None = Header(None)) -> UserResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == user_id)).mappings().one()
    return user_response(row)


@app.put("/users/me", response_model=UserResponse)
def update_profile(
    payload: ProfilePayload, authorization: str | None = Header(None)
) -> UserResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(name=_optional_text(payload.name))
            .returning(*users.c)
        ).mappings().one()
    return user_response(row)


@app.put("/users/me/password")
def change_password(
    payload: PasswordChangePayload, authorization: str | None = Header(None)
) -> dict:
    user_id = get_user_id(authorization)
    if not payload.new_password:
        raise ValidationError("New password required.")
    with engine.begin() as conn:
        hashed = conn.execute(
            select(users.c.hashed_password).where(users.c.id == user_id)
        ).scalar_one()
        if not verify_password(payload.old_password, hashed):
            raise ValidationError("Old password is incorrect.")
        conn.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(hashed_password=hash_password(payload.new_password))
        )
    logger.info("user.password_changed", user_id=user_id)
    return {"status": "updated"}


@app.put("/users/me/avatar", response_model=UserResponse)
def upload_avatar(
    file: UploadFile = File(...),
    authorization: str | None = Header(None),
    blob_store: BlobStore = Depends(get_blob_store),
) -> UserResponse:
    user_id = get_user_id(authorization)
    data = read_image_upload(file)
    with engine.begin() as conn:
        previous = conn.execute(select(users.c.avatar_id).where(users.c.id == user_id)).scalar_one()
    stored = blob_store.upload(data, folder="avatars")
    try:
        with engine.begin() as conn:
            row = conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(avatar_id=stored.id, avatar_url=stored.url)
                .returning(*users.c)
            ).mappings().one()
    except Exception:
        discard_blob(blob_store, stored.id)
        raise
    discard_blob(blob_store, previous)
    return user_response(row)


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(authorization: str | None = Header(None)) -> list[AccountResponse]:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == user_id)
            .order_by(accounts.c.created_at.desc(), accounts.c.id.desc())
        ).mappings().all()
    return [AccountResponse(**row) for row in rows]


@app.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    payload: AccountPayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> AccountResponse:
    user_id = get_user_id(authorization)
    payload = validated(AccountPayload.validate_payload, payload)

    stmt = (
        insert(accounts)
        .values(
            user_id=user_id,
            account_type=payload.account_type,
            branch_name=payload.branch_name,
            account_number=payload.account_number,
            bank_name=payload.bank_name,
            balance=payload.balance,
            opening_balance=payload.balance,
        )
        .returning(*accounts.c)
    )
    try:
        with engine.begin() as conn:
            existing = conn.execute(
                select(accounts.c.id).where(
                    accounts.c.user_id == user_id,
                    accounts.c.account_number == payload.account_number,
                )
            ).first()
            if existing:
                raise ConflictError("Account with this number already exists.")
            row = conn.execute(stmt).mappings().one()
    except IntegrityError as exc:
        raise ConflictError("Account with this number already exists.") from exc

    notify(notifier, f"New account created: {row['bank_name']} ({row['account_type']})")
    return AccountResponse(**row)


@app.get("/accounts/{account_id}", response_model=AccountDetailResponse)
def get_account(account_id: int, authorization: str | None = Header(None)) -> AccountDetailResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).mappings().first()
        if not row:
            raise NotFoundError("Account not found.")
        ledger_rows = conn.execute(
            select(transactions)
            .where(transactions.c.account_id == account_id, transactions.c.user_id == user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return AccountDetailResponse(
        **row,
        transactions=[TransactionResponse(**txn) for txn in ledger_rows],
    )


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int,
    payload: AccountUpdatePayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> AccountResponse:
    user_id = get_user_id(authorization)
    changes = validated_changes(payload)
    row = ledger.edit_account(
        engine,
        user_id,
        account_id,
        changes,
        expected_version=payload.expected_version,
    )
    notify(notifier, f"Account updated: {row['bank_name']} ({row['account_type']})")
    return AccountResponse(**row)


@app.delete("/accounts/{account_id}")
def delete_account(
    account_id: int,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> dict:
    user_id = get_user_id(authorization)
    stmt = (
        accounts.delete()
        .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        .returning(accounts.c.bank_name, accounts.c.account_type)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
        if not row:
            raise NotFoundError("Account not found.")
    notify(notifier, f"Account deleted: {row['bank_name']} ({row['account_type']})")
    return {"status": "deleted"}


@app.post("/accounts/{account_id}/reconcile", response_model=ReconciliationResponse)
def reconcile_account(
    account_id: int, authorization: str | None = Header(None)
) -> ReconciliationResponse:
    user_id = get_user_id(authorization)
    result = ledger.reconcile_account(engine, user_id, account_id)
    return ReconciliationResponse(
        account=AccountResponse(**result.account),
        previous_balance=result.previous_balance,
        drift=result.drift,
    )


@app.get("/transactions/summary", response_model=SummaryResponse)
def transaction_summary(authorization: str | None = Header(None)) -> SummaryResponse:
    user_id = get_user_id(authorization)
    summary = ledger.summarize(engine, user_id)
    return SummaryResponse(
        total_balance=summary.total_balance,
        revenues=summary.revenues,
        expenses=summary.expenses,
    )


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    account_id: int | None = None,
    authorization: str | None = Header(None),
) -> list[TransactionResponse]:
    user_id = get_user_id(authorization)
    conditions = [transactions.c.user_id == user_id]
    if account_id is not None:
        conditions.append(transactions.c.account_id == account_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(transactions)
            .where(*conditions)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        ).mappings().all()
    return [TransactionResponse(**row) for row in rows]


@app.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> TransactionResponse:
    user_id = get_user_id(authorization)
    payload = validated(TransactionPayload.validate_payload, payload)
    row = ledger.apply_transaction(
        engine,
        user_id,
        payload.model_dump(exclude_none=True),
        notifier=notifier,
    )
    return TransactionResponse(**row)


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, authorization: str | None = Header(None)
) -> TransactionResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
    if not row:
        raise NotFoundError("Transaction not found.")
    return TransactionResponse(**row)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> TransactionResponse:
    user_id = get_user_id(authorization)
    changes = validated_changes(payload)
    row = ledger.reapply_transaction(engine, user_id, transaction_id, changes, notifier=notifier)
    return TransactionResponse(**row)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
    blob_store: BlobStore = Depends(get_blob_store),
) -> dict:
    user_id = get_user_id(authorization)
    row = ledger.retract_transaction(engine, user_id, transaction_id, notifier=notifier)
    discard_blob(blob_store, row["receipt_id"])
    return {"status": "deleted"}


@app.put("/transactions/{transaction_id}/receipt", response_model=TransactionResponse)
def upload_transaction_receipt(
    transaction_id: int,
    file: UploadFile = File(...),
    authorization: str | None = Header(None),
    blob_store: BlobStore = Depends(get_blob_store),
) -> TransactionResponse:
    user_id = get_user_id(authorization)
    data = read_image_upload(file)
    conditions = [transactions.c.id == transaction_id, transactions.c.user_id == user_id]
    with engine.begin() as conn:
        existing = conn.execute(select(transactions.c.receipt_id).where(*conditions)).first()
    if not existing:
        raise NotFoundError("Transaction not found.")

    stored = blob_store.upload(data, folder="receipts")
    try:
        with engine.begin() as conn:
            row = conn.execute(
                update(transactions)
                .where(*conditions)
                .values(receipt_id=stored.id, receipt_url=stored.url)
                .returning(*transactions.c)
            ).mappings().first()
    except Exception:
        discard_blob(blob_store, stored.id)
        raise
    if not row:
        discard_blob(blob_store, stored.id)
        raise NotFoundError("Transaction not found.")
    discard_blob(blob_store, existing[0])
    return TransactionResponse(**row)


@app.get("/bills", response_model=list[BillResponse])
def list_bills(authorization: str | None = Header(None)) -> list[BillResponse]:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(
            select(bills)
            .where(bills.c.user_id == user_id)
            .order_by(bills.c.due_date.asc(), bills.c.id.asc())
        ).mappings().all()
    return [BillResponse(**row) for row in rows]


@app.post("/bills", response_model=BillResponse, status_code=201)
def create_bill(
    payload: BillPayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> BillResponse:
    user_id = get_user_id(authorization)
    payload = validated(BillPayload.validate_payload, payload)
    with engine.begin() as conn:
        row = conn.execute(
            insert(bills)
            .values(user_id=user_id, **payload.model_dump())
            .returning(*bills.c)
        ).mappings().one()
    notify(notifier, f"New bill created: {row['vendor']} - {row['plan']}")
    return BillResponse(**row)


@app.get("/bills/{bill_id}", response_model=BillResponse)
def get_bill(bill_id: int, authorization: str | None = Header(None)) -> BillResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            select(bills).where(bills.c.id == bill_id, bills.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise NotFoundError("Bill not found.")
    return BillResponse(**row)


@app.put("/bills/{bill_id}", response_model=BillResponse)
def update_bill(
    bill_id: int,
    payload: BillUpdatePayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> BillResponse:
    user_id = get_user_id(authorization)
    changes = validated_changes(payload)
    with engine.begin() as conn:
        row = conn.execute(
            update(bills)
            .where(bills.c.id == bill_id, bills.c.user_id == user_id)
            .values(**changes)
            .returning(*bills.c)
        ).mappings().first()
    if not row:
        raise NotFoundError("Bill not found.")
    notify(notifier, f"Bill updated: {row['vendor']} - {row['plan']}")
    return BillResponse(**row)


@app.delete("/bills/{bill_id}")
def delete_bill(
    bill_id: int,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
    blob_store: BlobStore = Depends(get_blob_store),
) -> dict:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            bills.delete()
            .where(bills.c.id == bill_id, bills.c.user_id == user_id)
            .returning(*bills.c)
        ).mappings().first()
    if not row:
        raise NotFoundError("Bill not found.")
    discard_blob(blob_store, row["logo_id"])
    notify(notifier, f"Bill deleted: {row['vendor']} - {row['plan']}")
    return {"status": "deleted"}


@app.put("/bills/{bill_id}/logo", response_model=BillResponse)
def upload_bill_logo(
    bill_id: int,
    file: UploadFile = File(...),
    authorization: str | None = Header(None),
    blob_store: BlobStore = Depends(get_blob_store),
) -> BillResponse:
    user_id = get_user_id(authorization)
    data = read_image_upload(file)
    conditions = [bills.c.id == bill_id, bills.c.user_id == user_id]
    with engine.begin() as conn:
        existing = conn.execute(select(bills.c.logo_id).where(*conditions)).first()
    if not existing:
        raise NotFoundError("Bill not found.")

    stored = blob_store.upload(data, folder="bill-logos")
    try:
        with engine.begin() as conn:
            row = conn.execute(
                update(bills)
                .where(*conditions)
                .values(logo_id=stored.id, logo_url=stored.url)
                .returning(*bills.c)
            ).mappings().first()
    except Exception:
        discard_blob(blob_store, stored.id)
        raise
    if not row:
        discard_blob(blob_store, stored.id)
        raise NotFoundError("Bill not found.")
    discard_blob(blob_store, existing[0])
    return BillResponse(**row)


@app.get("/goals", response_model=list[GoalResponse])
def list_goals(authorization: str | None = Header(None)) -> list[GoalResponse]:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(
            select(goals).where(goals.c.user_id == user_id).order_by(goals.c.id.asc())
        ).mappings().all()
    return [GoalResponse(**row) for row in rows]


@app.post("/goals", response_model=GoalResponse, status_code=201)
def create_goal(
    payload: GoalPayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> GoalResponse:
    user_id = get_user_id(authorization)
    payload = validated(GoalPayload.validate_payload, payload)
    with engine.begin() as conn:
        row = conn.execute(
            insert(goals)
            .values(user_id=user_id, **payload.model_dump())
            .returning(*goals.c)
        ).mappings().one()
    notify(notifier, f"New goal created: {row['title']}")
    return GoalResponse(**row)


@app.get("/goals/{goal_id}", response_model=GoalResponse)
def get_goal(goal_id: int, authorization: str | None = Header(None)) -> GoalResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            select(goals).where(goals.c.id == goal_id, goals.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise NotFoundError("Goal not found.")
    return GoalResponse(**row)


@app.put("/goals/{goal_id}", response_model=GoalResponse)
def update_goal(
    goal_id: int,
    payload: GoalUpdatePayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> GoalResponse:
    user_id = get_user_id(authorization)
    changes = validated_changes(payload)
    with engine.begin() as conn:
        row = conn.execute(
            update(goals)
            .where(goals.c.id == goal_id, goals.c.user_id == user_id)
            .values(**changes)
            .returning(*goals.c)
        ).mappings().first()
    if not row:
        raise NotFoundError("Goal not found.")
    notify(notifier, f"Goal updated: {row['title']}")
    return GoalResponse(**row)


@app.delete("/goals/{goal_id}")
def delete_goal(
    goal_id: int,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> dict:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            goals.delete()
            .where(goals.c.id == goal_id, goals.c.user_id == user_id)
            .returning(goals.c.title)
        ).mappings().first()
    if not row:
        raise NotFoundError("Goal not found.")
    notify(notifier, f"Goal deleted: {row['title']}")
    return {"status": "deleted"}


@app.get("/expenses/analytics/comparison", response_model=list[ComparisonPointResponse])
def expense_comparison(
    filter_name: str | None = Query(None, alias="filter"),
    authorization: str | None = Header(None),
) -> list[ComparisonPointResponse]:
    user_id = get_user_id(authorization)
    try:
        resolution = normalize_comparison_filter(filter_name)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    with engine.begin() as conn:
        rows = conn.execute(select(expenses).where(expenses.c.user_id == user_id)).mappings().all()
    points = compare_expenses([expense_record(row) for row in rows], resolution, date.today())
    return [ComparisonPointResponse(label=point.label, total=point.total) for point in points]


@app.get("/expenses/analytics/breakdown", response_model=list[CategoryBreakdownResponse])
def expense_breakdown(authorization: str | None = Header(None)) -> list[CategoryBreakdownResponse]:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(select(expenses).where(expenses.c.user_id == user_id)).mappings().all()
    return [
        CategoryBreakdownResponse(
            category=entry.category,
            total=entry.total,
            change_percent=entry.change_percent,
            items=[
                ExpenseItemResponse(
                    id=item.id,
                    title=item.title,
                    category=item.category,
                    amount=item.amount,
                    date=item.date,
                    account_id=item.account_id,
                )
                for item in entry.items
            ],
        )
        for entry in breakdown_expenses(expense_record(row) for row in rows)
    ]


@app.get("/expenses", response_model=list[ExpenseResponse])
def list_expenses(authorization: str | None = Header(None)) -> list[ExpenseResponse]:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        rows = conn.execute(
            select(expenses)
            .where(expenses.c.user_id == user_id)
            .order_by(expenses.c.date.desc(), expenses.c.id.desc())
        ).mappings().all()
    return [ExpenseResponse(**row) for row in rows]


@app.post("/expenses", response_model=ExpenseResponse, status_code=201)
def create_expense(
    payload: ExpensePayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> ExpenseResponse:
    user_id = get_user_id(authorization)
    payload = validated(ExpensePayload.validate_payload, payload)
    with engine.begin() as conn:
        if payload.account_id is not None:
            ledger.require_account(conn, user_id, payload.account_id)
        row = conn.execute(
            insert(expenses)
            .values(
                user_id=user_id,
                title=payload.title,
                category=payload.category,
                amount=payload.amount,
                date=payload.date or date.today(),
                account_id=payload.account_id,
            )
            .returning(*expenses.c)
        ).mappings().one()
    notify(notifier, f"New expense added: {row['title']} - {ledger.format_amount(row['amount'])}")
    return ExpenseResponse(**row)


@app.get("/expenses/{expense_id}", response_model=ExpenseResponse)
def get_expense(expense_id: int, authorization: str | None = Header(None)) -> ExpenseResponse:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            select(expenses).where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise NotFoundError("Expense not found.")
    return ExpenseResponse(**row)


@app.put("/expenses/{expense_id}", response_model=ExpenseResponse)
def update_expense(
    expense_id: int,
    payload: ExpenseUpdatePayload,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> ExpenseResponse:
    user_id = get_user_id(authorization)
    changes = validated_changes(payload)
    with engine.begin() as conn:
        if changes.get("account_id") is not None:
            ledger.require_account(conn, user_id, changes["account_id"])
        row = conn.execute(
            update(expenses)
            .where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
            .values(**changes)
            .returning(*expenses.c)
        ).mappings().first()
    if not row:
        raise NotFoundError("Expense not found.")
    notify(notifier, f"Expense updated: {row['title']} - {ledger.format_amount(row['amount'])}")
    return ExpenseResponse(**row)


@app.delete("/expenses/{expense_id}")
def delete_expense(
    expense_id: int,
    authorization: str | None = Header(None),
    notifier: Notifier = Depends(get_notifier),
) -> dict:
    user_id = get_user_id(authorization)
    with engine.begin() as conn:
        row = conn.execute(
            expenses.delete()
            .where(expenses.c.id == expense_id, expenses.c.user_id == user_id)
            .returning(expenses.c.title, expenses.c.amount)
        ).mappings().first()
    if not row:
        raise NotFoundError("Expense not found.")
    notify(notifier, f"Expense deleted: {row['title']} - {ledger.format_amount(row['amount'])}")
    return {"status": "deleted"}
