"""Sale and settlement records, the two input streams of reconciliation."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Dict, Any
from uuid import uuid4

from ..utils.money import from_cents
from .enums import MatchStatus


@dataclass(frozen=True)
class SaleRecord:
    """
    One POS/terminal transaction awaiting settlement.
    All monetary amounts are stored in CENTS (integer) to avoid floating point errors.

    Records are immutable; the store replaces a record to change its match status.
    """
    id: str = field(default_factory=lambda: str(uuid4()))
    terminal_id: str = ""
    period: str = ""  # processing period, "YYYY-MM"

    sale_date: Optional[date] = None

    # Financial data (ALL IN CENTS)
    gross_amount_cents: int = 0
    net_amount_cents: int = 0  # gross minus processor fee

    payment_method: str = ""  # debito, credito_vista, credito_parcelado, pix...
    external_reference: Optional[str] = None  # NSU / authorization code

    match_status: MatchStatus = MatchStatus.UNMATCHED
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if self.sale_date is None:
            raise ValueError(f"Sale {self.id}: sale_date is required")
        if self.gross_amount_cents < 0 or self.net_amount_cents < 0:
            raise ValueError(f"Sale {self.id}: amounts must be non-negative")
        if self.net_amount_cents > self.gross_amount_cents:
            raise ValueError(
                f"Sale {self.id}: net amount ({self.net_amount_cents}) exceeds "
                f"gross amount ({self.gross_amount_cents})"
            )

    @property
    def net_amount(self) -> Decimal:
        """Net amount in currency units (reais)."""
        return from_cents(self.net_amount_cents)

    @property
    def fee_cents(self) -> int:
        """Processor fee withheld from the sale."""
        return self.gross_amount_cents - self.net_amount_cents

    @property
    def is_unmatched(self) -> bool:
        return self.match_status == MatchStatus.UNMATCHED

    def reference_text(self) -> str:
        """Text used for description matching."""
        return " ".join(filter(None, [self.external_reference, self.payment_method]))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "terminal_id": self.terminal_id,
            "period": self.period,
            "sale_date": self.sale_date.isoformat() if self.sale_date else None,
            "gross_amount_cents": self.gross_amount_cents,
            "net_amount_cents": self.net_amount_cents,
            "net_amount": str(self.net_amount),
            "payment_method": self.payment_method,
            "external_reference": self.external_reference,
            "match_status": self.match_status.value,
        }


@dataclass(frozen=True)
class SettlementRecord:
    """
    One bank/processor deposit line for a terminal.
    """
    id: str = field(default_factory=lambda: str(uuid4()))
    terminal_id: str = ""
    period: str = ""

    settlement_date: Optional[date] = None
    amount_cents: int = 0

    external_reference: Optional[str] = None  # bank document number
    description: str = ""  # raw bank line text

    match_status: MatchStatus = MatchStatus.UNMATCHED
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if self.settlement_date is None:
            raise ValueError(f"Settlement {self.id}: settlement_date is required")
        if self.amount_cents < 0:
            raise ValueError(f"Settlement {self.id}: amount must be non-negative")

    @property
    def amount(self) -> Decimal:
        """Amount in currency units (reais)."""
        return from_cents(self.amount_cents)

    @property
    def is_unmatched(self) -> bool:
        return self.match_status == MatchStatus.UNMATCHED

    def reference_text(self) -> str:
        """Text used for description matching."""
        return " ".join(filter(None, [self.external_reference, self.description]))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "terminal_id": self.terminal_id,
            "period": self.period,
            "settlement_date": self.settlement_date.isoformat() if self.settlement_date else None,
            "amount_cents": self.amount_cents,
            "amount": str(self.amount),
            "external_reference": self.external_reference,
            "description": self.description,
            "match_status": self.match_status.value,
        }


@dataclass
class Terminal:
    """A payment terminal (maquininha) and the processor that settles it."""
    id: str
    name: str = ""
    processor: str = ""  # rede, sipag, cielo, stone...
