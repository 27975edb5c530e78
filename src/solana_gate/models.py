from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple


class KeyingStrategy(str, Enum):
    """How a pending claim is looked up for a candidate transfer.

    SESSION keys on (destination, session) and relies on the deposit address
    being fresh or the amount being unique. SOURCE keys on (source,
    destination) and requires the payer wallet to be declared up front.
    """

    SESSION = "session"
    SOURCE = "source"


class LookupFailurePolicy(str, Enum):
    ZERO = "zero"
    RAISE = "raise"


class DepositAsset(str, Enum):
    NATIVE = "native"
    TOKEN = "token"


class Verdict(str, Enum):
    CONFIRMED = "confirmed"
    NO_MATCH = "no_match"
    AMOUNT_MISMATCH = "amount_mismatch"


class OutcomeKind(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    REFUNDED = "refunded"
    NO_MATCH = "no_match"
    NO_TRANSFER = "no_transfer"
    TIMED_OUT = "timed_out"
    REFUND_FAILED = "refund_failed"
    INVITE_FAILED = "invite_failed"


class Reason(str, Enum):
    INSUFFICIENT_HOLDINGS = "insufficient_holdings"
    DUPLICATE_WALLET = "duplicate_wallet"
    AMOUNT_MISMATCH = "amount_mismatch"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Requirement:
    """Either an absolute raw amount or a percentage of total supply."""

    amount: Optional[int] = None
    percent: Optional[Decimal] = None

    @staticmethod
    def absolute(amount: int) -> "Requirement":
        return Requirement(amount=int(amount))

    @staticmethod
    def percent_of_supply(percent: Decimal) -> "Requirement":
        return Requirement(percent=Decimal(percent))

    @property
    def needs_supply(self) -> bool:
        return self.amount is None

    def resolve(self, total_supply: Optional[int] = None) -> int:
        if self.amount is not None:
            return self.amount
        if total_supply is None:
            raise ValueError("Percent requirement needs the total supply.")
        return int(Decimal(total_supply) * self.percent / Decimal(100))


@dataclass(frozen=True)
class Challenge:
    session_key: int
    user_id: int
    token_mint: str
    asset: DepositAsset
    deposit_address: str
    requirement: Requirement
    expected_amount: Optional[int] = None
    expected_signature: Optional[str] = None
    # Declared payer wallet, only used with SOURCE keying.
    source: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def with_signature(self, signature: str) -> "Challenge":
        return replace(self, expected_signature=signature)


@dataclass
class TransferRecord:
    session_key: int
    user_id: int
    mint: str
    destination: str
    amount: Optional[int]
    source: Optional[str] = None
    signature: Optional[str] = None
    confirmed: bool = False
    received: Optional[int] = None
    block_time: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def pending_for(challenge: Challenge) -> "TransferRecord":
        return TransferRecord(
            session_key=challenge.session_key,
            user_id=challenge.user_id,
            mint=challenge.token_mint,
            destination=challenge.deposit_address,
            amount=challenge.expected_amount,
            source=challenge.source,
            created_at=challenge.created_at,
        )


@dataclass(frozen=True)
class PendingKey:
    destination: str
    session_key: Optional[int] = None
    source: Optional[str] = None


@dataclass(frozen=True)
class TransferEvent:
    signature: str
    source: Optional[str]
    destination: Optional[str]
    amount: Optional[int]
    mint: Optional[str]
    block_time: Optional[int]
    program: str
    # Raw token accounts; equal to source/destination for native transfers.
    source_account: Optional[str] = None
    destination_account: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(self.source and self.destination and self.amount)

    @property
    def time(self) -> Optional[datetime]:
        if self.block_time is None:
            return None
        return datetime.fromtimestamp(self.block_time, tz=timezone.utc)


@dataclass(frozen=True)
class EligibilitySnapshot:
    liquid: int
    staked: int
    required: int
    # Sources that failed and were counted as zero.
    degraded: Tuple[str, ...] = ()

    @property
    def combined(self) -> int:
        return self.liquid + self.staked

    @property
    def shortfall(self) -> int:
        return self.required - self.combined

    @property
    def eligible(self) -> bool:
        return self.shortfall <= 0


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    return_funds: bool = False
    duplicate_wallet: bool = False

    @property
    def confirmed(self) -> bool:
        return self.verdict is Verdict.CONFIRMED


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    reason: Optional[Reason] = None
    invite_link: Optional[str] = None
    refund_signature: Optional[str] = None
    snapshot: Optional[EligibilitySnapshot] = None
    detail: str = ""
