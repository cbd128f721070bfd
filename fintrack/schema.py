from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("name", String(255)),
    Column("avatar_id", String(255)),
    Column("avatar_url", String(1024)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

# Account ids are never reused, so orphaned transactions cannot attach to a
# newer account.
accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("account_type", String(50), nullable=False),
    Column("branch_name", String(255), nullable=False),
    Column("account_number", String(64), nullable=False),
    Column("bank_name", String(255), nullable=False),
    Column("balance", Numeric(14, 2), nullable=False, server_default="0"),
    Column("opening_balance", Numeric(14, 2), nullable=False, server_default="0"),
    Column("version", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "account_number", name="uq_accounts_user_number"),
    sqlite_autoincrement=True,
)

# account_id carries no foreign key: deleting an account leaves its
# transactions in place and the ledger skips balance work for them.
transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("title", String(255)),
    Column("shop", String(255)),
    Column("category", String(255)),
    Column("date", Date),
    Column("method", String(50)),
    Column("status", String(20), nullable=False, server_default="Complete"),
    Column("receipt_id", String(255)),
    Column("receipt_url", String(1024)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

bills = Table(
    "bills",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("vendor", String(255), nullable=False),
    Column("plan", String(255)),
    Column("due_date", Date, nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("logo_id", String(255)),
    Column("logo_url", String(1024)),
    Column("last_charge_date", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("target_amount", Numeric(14, 2), nullable=False),
    Column("current_amount", Numeric(14, 2), nullable=False, server_default="0"),
    Column("deadline", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("category", String(255), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("date", Date, nullable=False),
    Column("account_id", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)
