"""Payment matcher — amount tolerance plus normalized-name similarity."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal

from p2p_desk.models import BankPayment, Order

_SEPARATORS = re.compile(r"[^\w\s]|_")
# Initials and short particles ("DE", "LA") carry no identity signal
_MIN_WORD_LEN = 3


def normalize_name(name: str) -> str:
    """Uppercase, strip accents, turn punctuation into spaces, collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", name or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(_SEPARATORS.sub(" ", stripped.upper()).split())


def name_words(name: str) -> set[str]:
    return {w for w in normalize_name(name).split() if len(w) >= _MIN_WORD_LEN}


def name_similarity(a: str, b: str) -> float:
    """Order-independent word overlap in [0, 1].

    Identical names score 1.0 even when every word is too short to count.
    """
    na, nb = normalize_name(a), normalize_name(b)
    if na and na == nb:
        return 1.0
    wa, wb = name_words(a), name_words(b)
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / max(len(wa), len(wb))


@dataclass(frozen=True)
class MatchCandidate:
    order: Order
    name_score: float
    amount_diff: Decimal


@dataclass(frozen=True)
class MatchResult:
    payment: BankPayment
    match: MatchCandidate | None
    # Every order within amount tolerance, matched or not
    amount_candidates: list[MatchCandidate] = field(default_factory=list)

    @property
    def order(self) -> Order | None:
        return self.match.order if self.match else None

    @property
    def name_mismatches(self) -> list[MatchCandidate]:
        return [c for c in self.amount_candidates if c is not self.match]


class PaymentMatcher:
    """Pairs bank payments with orders awaiting settlement.

    Amount and name must both match. The name check is never waived, not
    even for trusted counterparties.
    """

    def __init__(self, amount_tolerance: float = 0.01, name_threshold: float = 0.3) -> None:
        self.amount_tolerance = Decimal(str(amount_tolerance))
        self.name_threshold = name_threshold

    def amount_matches(self, paid: Decimal, expected: Decimal) -> bool:
        if expected <= 0:
            return False
        return abs(paid - expected) <= expected * self.amount_tolerance

    def name_matches(self, score: float) -> bool:
        return score > self.name_threshold

    def match(self, payment: BankPayment, orders: list[Order]) -> MatchResult:
        candidates = [
            MatchCandidate(
                order=o,
                name_score=name_similarity(payment.sender_name, o.display_name),
                amount_diff=abs(payment.amount - o.amount),
            )
            for o in orders
            if self.amount_matches(payment.amount, o.amount)
        ]
        accepted = [c for c in candidates if self.name_matches(c.name_score)]
        if not accepted:
            return MatchResult(payment=payment, match=None, amount_candidates=candidates)

        best = min(accepted, key=lambda c: (-c.name_score, c.amount_diff, c.order.created_at))
        return MatchResult(payment=payment, match=best, amount_candidates=candidates)

    def best_payment_for(self, order: Order, payments: list[BankPayment]) -> BankPayment | None:
        """Reverse lookup for payments that arrived before the order was tracked."""
        best: tuple[float, Decimal, BankPayment] | None = None
        for p in payments:
            if not self.amount_matches(p.amount, order.amount):
                continue
            score = name_similarity(p.sender_name, order.display_name)
            if not self.name_matches(score):
                continue
            key = (score, -abs(p.amount - order.amount), p)
            if best is None or key[:2] > best[:2]:
                best = key
        return best[2] if best else None
