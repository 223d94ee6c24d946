"""
Fee Ledger: the ordered list of charge entries stored on a lead.

Each entry holds four fee buckets. Claims pay entries down oldest-first and,
inside one entry, bucket by bucket in the fixed order of FEE_BUCKETS.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping, NamedTuple

from .errors import ValidationError

# Deduction priority inside a single entry
FEE_BUCKETS = ("govt_fees", "professional_fees", "stamp_fees", "other_fees")


def to_money(value: Any) -> float:
    """Coerce a stored value to a 2-decimal amount. Non-numeric values read as 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return round(float(value), 2)
    return 0.0


class FeeEntry(NamedTuple):
    govt_fees: float = 0.0
    professional_fees: float = 0.0
    stamp_fees: float = 0.0
    other_fees: float = 0.0
    created_at: datetime | None = None

    @property
    def total(self) -> float:
        return round(sum(getattr(self, b) for b in FEE_BUCKETS), 2)

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any] | None) -> "FeeEntry":
        doc = doc or {}
        return cls(
            *(to_money(doc.get(b)) for b in FEE_BUCKETS),
            created_at=doc.get("created_at"),
        )

    def to_doc(self) -> dict[str, Any]:
        doc: dict[str, Any] = {b: getattr(self, b) for b in FEE_BUCKETS}
        doc["created_at"] = self.created_at
        return doc


def parse_fee_input(body: Mapping[str, Any], created_at: datetime | None = None) -> FeeEntry:
    """
    Build a FeeEntry from user input (API body or intake payload).
    Missing buckets default to 0; anything non-numeric or negative is rejected.
    """
    values = []
    bad = []
    for bucket in FEE_BUCKETS:
        raw = body.get(bucket, 0)
        if raw in (None, ""):
            raw = 0
        try:
            val = round(float(raw), 2)
        except (TypeError, ValueError):
            bad.append(bucket)
            continue
        if val < 0:
            bad.append(bucket)
            continue
        values.append(val)

    if bad:
        raise ValidationError(
            f"Fee buckets must be non-negative numbers: {', '.join(bad)}",
            invalid_buckets=bad,
        )
    return FeeEntry(*values, created_at=created_at)


def load_entries(docs: Iterable[Mapping[str, Any]] | None) -> list[FeeEntry]:
    return [FeeEntry.from_doc(d) for d in (docs or [])]


def ledger_total(entries: Iterable[FeeEntry]) -> float:
    return round(sum(e.total for e in entries), 2)


def deduct(entries: Iterable[FeeEntry], amount: float) -> tuple[list[FeeEntry], float]:
    """
    Pay `amount` down against the ledger, FIFO by entry, fixed order by bucket.

    Returns (new_entries, amount_actually_deducted). The deducted amount is lower
    than `amount` only when the ledger total was insufficient; callers cap the
    claim beforehand so this should not normally truncate.
    """
    amount = round(float(amount), 2)
    if amount < 0:
        raise ValidationError("Deduction amount cannot be negative", amount=amount)

    remaining = amount
    out: list[FeeEntry] = []
    for entry in entries:
        if remaining <= 0 or entry.total <= 0:
            out.append(entry)
            continue

        changes: dict[str, float] = {}
        for bucket in FEE_BUCKETS:
            if remaining <= 0:
                break
            current = getattr(entry, bucket)
            if current <= 0:
                continue
            take = min(current, remaining)
            changes[bucket] = round(current - take, 2)
            remaining = round(remaining - take, 2)
        out.append(entry._replace(**changes))

    return out, round(amount - remaining, 2)
