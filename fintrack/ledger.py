"""Account balance maintenance for transaction create/update/delete.

An account's stored balance always equals its opening balance plus the
signed effect of every transaction booked against it. Each operation here
runs inside a single database transaction, and balance changes are relative
``balance = balance + :delta`` updates, so the transaction row and the
account row commit together and concurrent requests on the same account
serialise on the account row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import structlog
from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from fintrack.config import CURRENCY_SYMBOL
from fintrack.errors import ConflictError, NotFoundError, ValidationError
from fintrack.notifications import Notifier, notify
from fintrack.schema import accounts, transactions

ZERO = Decimal("0")
CENT = Decimal("0.01")
INCOME = "income"
EXPENSE = "expense"
TRANSACTION_TYPES = {INCOME, EXPENSE}

TRANSACTION_FIELDS = (
    "account_id",
    "type",
    "amount",
    "title",
    "shop",
    "category",
    "date",
    "method",
    "status",
)
ACCOUNT_FIELDS = ("account_type", "branch_name", "account_number", "bank_name", "balance")

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Reconciliation:
    account: dict[str, Any]
    previous_balance: Decimal
    drift: Decimal


@dataclass(frozen=True)
class LedgerSummary:
    total_balance: Decimal
    revenues: Decimal
    expenses: Decimal


def signed_effect(txn_type: str, amount: Decimal | int | float | str) -> Decimal:
    """Balance delta contributed by one transaction."""
    normalized = (txn_type or "").strip().lower()
    value = _coerce_amount(amount)
    if normalized == INCOME:
        return value
    if normalized == EXPENSE:
        return -value
    raise ValidationError(f"Unsupported transaction type: {txn_type}")


def reapply_delta(
    old_type: str,
    old_amount: Decimal,
    new_type: str,
    new_amount: Decimal,
) -> Decimal:
    """Net balance change when a transaction is rewritten in place."""
    return signed_effect(new_type, new_amount) - signed_effect(old_type, old_amount)


def format_amount(amount: Decimal | int | float | str) -> str:
    return f"{CURRENCY_SYMBOL}{_coerce_amount(amount)}"


def apply_transaction(
    engine: Engine,
    user_id: int,
    values: Mapping[str, Any],
    notifier: Optional[Notifier] = None,
) -> dict[str, Any]:
    fields = _validate_transaction_fields(values)
    with engine.begin() as conn:
        require_account(conn, user_id, fields["account_id"])
        row = conn.execute(
            insert(transactions)
            .values(user_id=user_id, **fields)
            .returning(*transactions.c)
        ).mappings().one()
        effect = signed_effect(row["type"], row["amount"])
        _adjust_balance(conn, user_id, row["account_id"], effect)

    logger.info(
        "ledger.applied",
        user_id=user_id,
        transaction_id=row["id"],
        account_id=row["account_id"],
        delta=str(effect),
    )
    notify(notifier, f"New transaction created: {row['type']} - {format_amount(row['amount'])}")
    return dict(row)


def reapply_transaction(
    engine: Engine,
    user_id: int,
    transaction_id: int,
    changes: Mapping[str, Any],
    notifier: Optional[Notifier] = None,
) -> dict[str, Any]:
    unknown = sorted(set(changes) - set(TRANSACTION_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown transaction field(s): {', '.join(unknown)}")

    with engine.begin() as conn:
        existing = conn.execute(
            select(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .with_for_update()
        ).mappings().first()
        if not existing:
            raise NotFoundError("Transaction not found.")

        merged = {field: existing[field] for field in TRANSACTION_FIELDS}
        merged.update(changes)
        fields = _validate_transaction_fields(merged)

        old_account_id = existing["account_id"]
        new_account_id = fields["account_id"]
        if new_account_id != old_account_id:
            require_account(conn, user_id, new_account_id)
            _adjust_balance(
                conn,
                user_id,
                old_account_id,
                -signed_effect(existing["type"], existing["amount"]),
            )
            _adjust_balance(
                conn,
                user_id,
                new_account_id,
                signed_effect(fields["type"], fields["amount"]),
            )
        else:
            # Roll-back of the old effect and the new effect are coalesced
            # into one write so no reader sees the intermediate balance.
            delta = reapply_delta(
                existing["type"], existing["amount"], fields["type"], fields["amount"]
            )
            _adjust_balance(conn, user_id, old_account_id, delta)

        row = conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .values(**fields)
            .returning(*transactions.c)
        ).mappings().one()

    logger.info(
        "ledger.reapplied",
        user_id=user_id,
        transaction_id=transaction_id,
        old_account_id=old_account_id,
        account_id=new_account_id,
    )
    notify(notifier, f"Transaction updated: {row['type']} - {format_amount(row['amount'])}")
    return dict(row)


def retract_transaction(
    engine: Engine,
    user_id: int,
    transaction_id: int,
    notifier: Optional[Notifier] = None,
) -> dict[str, Any]:
    with engine.begin() as conn:
        row = conn.execute(
            delete(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .returning(*transactions.c)
        ).mappings().first()
        if not row:
            raise NotFoundError("Transaction not found.")
        adjusted = _adjust_balance(
            conn,
            user_id,
            row["account_id"],
            -signed_effect(row["type"], row["amount"]),
        )

    if not adjusted:
        logger.warning(
            "ledger.retracted_orphan",
            user_id=user_id,
            transaction_id=transaction_id,
            account_id=row["account_id"],
        )
    else:
        logger.info("ledger.retracted", user_id=user_id, transaction_id=transaction_id)
    notify(notifier, f"Transaction deleted: {row['type']} - {format_amount(row['amount'])}")
    return dict(row)


def ledger_effect_total(conn: Connection, user_id: int, account_id: int) -> Decimal:
    rows = conn.execute(
        select(transactions.c.type, transactions.c.amount).where(
            transactions.c.account_id == account_id,
            transactions.c.user_id == user_id,
        )
    ).all()
    total = ZERO
    for txn_type, amount in rows:
        total += signed_effect(txn_type, amount)
    return total


def reconcile_account(engine: Engine, user_id: int, account_id: int) -> Reconciliation:
    """Recompute the balance from the ledger; running it twice is a no-op."""
    with engine.begin() as conn:
        account = conn.execute(
            select(accounts)
            .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
            .with_for_update()
        ).mappings().first()
        if not account:
            raise NotFoundError("Account not found.")

        previous_balance = _coerce_amount(account["balance"])
        expected = _coerce_amount(account["opening_balance"]) + ledger_effect_total(
            conn, user_id, account_id
        )
        drift = expected - previous_balance
        if drift == ZERO:
            row = account
        else:
            row = conn.execute(
                update(accounts)
                .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
                .values(balance=expected, version=accounts.c.version + 1)
                .returning(*accounts.c)
            ).mappings().one()

    if drift != ZERO:
        logger.warning(
            "ledger.reconciled_drift",
            user_id=user_id,
            account_id=account_id,
            drift=str(drift),
        )
    return Reconciliation(account=dict(row), previous_balance=previous_balance, drift=drift)


def edit_account(
    engine: Engine,
    user_id: int,
    account_id: int,
    changes: Mapping[str, Any],
    expected_version: Optional[int] = None,
) -> dict[str, Any]:
    """Direct account edit.

    A new ``balance`` is honoured by moving the opening balance, so the
    account still reconciles against its ledger afterwards.
    """
    unknown = sorted(set(changes) - set(ACCOUNT_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown account field(s): {', '.join(unknown)}")
    if not changes:
        raise ValidationError("No account fields to update.")

    values = dict(changes)
    conditions = [accounts.c.id == account_id, accounts.c.user_id == user_id]
    if expected_version is not None:
        conditions.append(accounts.c.version == expected_version)

    try:
        with engine.begin() as conn:
            if "balance" in values:
                new_balance = _coerce_amount(values["balance"])
                if new_balance < ZERO:
                    raise ValidationError("Balance must not be negative.")
                values["balance"] = new_balance
                values["opening_balance"] = new_balance - ledger_effect_total(
                    conn, user_id, account_id
                )
                values["version"] = accounts.c.version + 1
            row = conn.execute(
                update(accounts).where(*conditions).values(**values).returning(*accounts.c)
            ).mappings().first()
            if not row:
                exists = conn.execute(
                    select(accounts.c.version).where(
                        accounts.c.id == account_id, accounts.c.user_id == user_id
                    )
                ).first()
                if exists:
                    raise ConflictError("Account was modified concurrently.")
                raise NotFoundError("Account not found.")
    except IntegrityError as exc:
        raise ConflictError("Account with this number already exists.") from exc

    logger.info("ledger.account_edited", user_id=user_id, account_id=account_id, fields=sorted(changes))
    return dict(row)


def summarize(engine: Engine, user_id: int) -> LedgerSummary:
    with engine.begin() as conn:
        balances = conn.execute(
            select(accounts.c.balance).where(accounts.c.user_id == user_id)
        ).scalars().all()
        rows = conn.execute(
            select(transactions.c.type, transactions.c.amount).where(
                transactions.c.user_id == user_id
            )
        ).all()

    revenues = ZERO
    spent = ZERO
    for txn_type, amount in rows:
        if txn_type == INCOME:
            revenues += _coerce_amount(amount)
        elif txn_type == EXPENSE:
            spent += _coerce_amount(amount)
    return LedgerSummary(
        total_balance=sum((_coerce_amount(value) for value in balances), ZERO),
        revenues=revenues,
        expenses=spent,
    )


def require_account(conn: Connection, user_id: int, account_id: Any) -> None:
    found = conn.execute(
        select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    ).first()
    if not found:
        raise NotFoundError("Account not found or not authorized.")


def _adjust_balance(conn: Connection, user_id: int, account_id: int, delta: Decimal) -> bool:
    """Returns False when the account no longer exists."""
    result = conn.execute(
        update(accounts)
        .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        .values(balance=accounts.c.balance + delta, version=accounts.c.version + 1)
    )
    return result.rowcount > 0


def _validate_transaction_fields(values: Mapping[str, Any]) -> dict[str, Any]:
    fields = {key: values[key] for key in TRANSACTION_FIELDS if key in values}
    if fields.get("account_id") is None:
        raise ValidationError("Account ID is required.")
    txn_type = (fields.get("type") or "").strip().lower()
    if txn_type not in TRANSACTION_TYPES:
        raise ValidationError("Transaction type must be income or expense.")
    fields["type"] = txn_type
    if fields.get("amount") is None:
        raise ValidationError("Amount is required.")
    amount = _coerce_amount(fields["amount"])
    if amount != amount.quantize(CENT):
        raise ValidationError("Amount must have at most 2 decimal places.")
    if amount <= ZERO:
        raise ValidationError("Amount must be greater than zero.")
    fields["amount"] = amount
    if fields.get("status") is None:
        fields.pop("status", None)
    if isinstance(fields.get("date"), str):
        try:
            fields["date"] = date.fromisoformat(fields["date"])
        except ValueError as exc:
            raise ValidationError("Date must be in YYYY-MM-DD format.") from exc
    return fields


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {amount}") from exc
