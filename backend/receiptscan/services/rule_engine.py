"""Per-user merchant rules for account classification.

A rule maps a *normalised* store name to a debit account (and
optionally a tax category) for one owner. The pipeline consults the
rule table before asking the model; a matching rule always wins and is
reported with confidence ``1.0``. Rules are learned from explicit user
saves and are never deleted automatically.

Normalisation folds Unicode width/compatibility forms (NFKC), removes
common corporate-entity tokens such as ``株式会社``, ``(株)`` or
``Co., Ltd.``, collapses whitespace, trims and case-folds. It is
applied until the value stops changing so that
``normalize_store_name(normalize_store_name(x)) == normalize_store_name(x)``.

Writes are single SQL statements: the hit counter is incremented in the
database (``hit_count = hit_count + 1``) and upserts use the dialect's
``INSERT ... ON CONFLICT DO UPDATE`` so concurrent jobs of the same
owner cannot lose updates.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
import unicodedata
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from receiptscan.core.exceptions import InvalidPayloadError
from receiptscan.models.schemas import RuleUpsert
from receiptscan.models.tables import Rule

logger = logging.getLogger(__name__)

_ENTITY_TOKENS = re.compile(
    r"株式会社|有限会社|合同会社|合資会社|合名会社"
    r"|\((?:株|有|同)\)"
    r"|\bco\s*\.\s*,?\s*ltd\b\.?"
    r"|\b(?:inc|corp|ltd|llc)\b\.?",
    re.IGNORECASE,
)
_WHITESPACE = re.compile(r"\s+")
# Separators left dangling once a token is removed, e.g. "Sample, Inc."
_EDGE_PUNCTUATION = " ,.・"


def _normalize_once(name: str) -> str:
    value = unicodedata.normalize("NFKC", name)
    value = _ENTITY_TOKENS.sub(" ", value)
    value = _WHITESPACE.sub(" ", value)
    value = value.strip(_EDGE_PUNCTUATION)
    return value.casefold()


def normalize_store_name(name: Optional[str]) -> str:
    """Return the rule lookup key for ``name`` (``""`` when empty)."""
    if not name:
        return ""
    value = name
    # casefold and NFKC can expose new tokens; stop at the fixed point
    for _ in range(5):
        normalized = _normalize_once(value)
        if normalized == value:
            break
        value = normalized
    return value


def lookup_rule(session: Session, owner_id: str, store_name: Optional[str]) -> Optional[Rule]:
    """Return the owner's rule for ``store_name`` or ``None``."""
    key = normalize_store_name(store_name)
    if not key:
        return None
    stmt = select(Rule).where(Rule.owner_id == owner_id, Rule.store_name_key == key)
    return session.execute(stmt).scalar_one_or_none()


def record_hit(session: Session, rule_id: int, commit: bool = True) -> None:
    """Atomically bump the hit counter and last-used timestamp.

    Pass ``commit=False`` to leave the increment in the caller's
    transaction so it lands together with the receipt it was used for.
    """
    session.execute(
        update(Rule)
        .where(Rule.id == rule_id)
        .values(hit_count=Rule.hit_count + 1, last_used_at=dt.datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if commit:
        session.commit()


def _dialect_insert(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        return None
    return insert


def upsert_rule(
    session: Session,
    owner_id: str,
    store_name: str,
    debit_account: str,
    tax_category: Optional[str] = None,
) -> Rule:
    """Create or overwrite the owner's rule for ``store_name``.

    Raises :class:`InvalidPayloadError` when the store name is blank or
    normalises to nothing, or the account/tax category is not one of
    the known values. ``hit_count`` is preserved on overwrite.
    """
    try:
        payload = RuleUpsert(store_name=store_name, debit_account=debit_account, tax_category=tax_category)
    except ValidationError as exc:
        raise InvalidPayloadError("Invalid rule payload", errors=exc.errors()) from exc

    key = normalize_store_name(payload.store_name)
    if not key:
        raise InvalidPayloadError(
            "Store name is empty after normalisation",
            errors=[{"loc": ["store_name"], "msg": "normalises to an empty key"}],
        )

    now = dt.datetime.utcnow()
    account = payload.debit_account.value
    tax = payload.tax_category.value if payload.tax_category else None

    insert = _dialect_insert(session)
    if insert is not None:
        stmt = insert(Rule).values(
            owner_id=owner_id,
            store_name_key=key,
            debit_account=account,
            tax_category=tax,
            hit_count=0,
            last_used_at=now,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Rule.owner_id, Rule.store_name_key],
            set_={"debit_account": account, "tax_category": tax, "last_used_at": now, "updated_at": now},
        )
        session.execute(stmt)
    else:  # pragma: no cover - only sqlite and postgres are deployed
        rule = session.execute(
            select(Rule).where(Rule.owner_id == owner_id, Rule.store_name_key == key).with_for_update()
        ).scalar_one_or_none()
        if rule is None:
            rule = Rule(owner_id=owner_id, store_name_key=key, hit_count=0)
            session.add(rule)
        rule.debit_account = account
        rule.tax_category = tax
        rule.last_used_at = now
    session.commit()

    logger.info("rule upserted owner=%s key=%s account=%s", owner_id, key, account)
    stmt = select(Rule).where(Rule.owner_id == owner_id, Rule.store_name_key == key)
    return session.execute(stmt.execution_options(populate_existing=True)).scalar_one()


def list_rules(session: Session, owner_id: str) -> List[Rule]:
    """Return the owner's rules, most used first."""
    stmt = select(Rule).where(Rule.owner_id == owner_id).order_by(Rule.hit_count.desc(), Rule.id.asc())
    return list(session.execute(stmt).scalars())
