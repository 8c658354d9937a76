"""Import all table modules so Base.metadata knows about them."""

from p2p_desk.db.tables.counterparties import TrustedCounterpartyRow
from p2p_desk.db.tables.events import PriceUpdateRow, ReleaseEventRow
from p2p_desk.db.tables.payments import BankPaymentRow

__all__ = [
    "BankPaymentRow",
    "PriceUpdateRow",
    "ReleaseEventRow",
    "TrustedCounterpartyRow",
]
