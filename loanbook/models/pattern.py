"""Learned reconciliation pattern model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List
from uuid import uuid4

from .enums import TargetType, TransactionDirection
from .ledger import utcnow
from .reconciliation import SplitRatios


@dataclass
class Pattern:
    """
    A description fingerprint mapped to a reconciliation target.
    Created on the first confirmed create decision, reinforced on repeats.
    """
    # Identity
    id: str = field(default_factory=lambda: str(uuid4()))
    keyword_fingerprint: str = ""
    description_pattern: str = ""

    # Applicability
    amount_min_cents: Optional[int] = None
    amount_max_cents: Optional[int] = None
    direction: TransactionDirection = TransactionDirection.DEBIT
    bank_source: str = ""

    # Target
    target_type: TargetType = TargetType.EXPENSE
    loan_id: Optional[str] = None
    investor_id: Optional[str] = None
    expense_type_id: Optional[str] = None
    split_ratios: SplitRatios = field(default_factory=SplitRatios)

    # Learning state
    confidence_score: float = 0.6
    match_count: int = 1
    last_used_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def keywords(self) -> List[str]:
        return self.keyword_fingerprint.split()

    def accepts_amount(self, abs_cents: int) -> bool:
        if self.amount_min_cents is not None and abs_cents < self.amount_min_cents:
            return False
        if self.amount_max_cents is not None and abs_cents > self.amount_max_cents:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "keyword_fingerprint": self.keyword_fingerprint,
            "description_pattern": self.description_pattern,
            "amount_min_cents": self.amount_min_cents,
            "amount_max_cents": self.amount_max_cents,
            "direction": self.direction.value,
            "bank_source": self.bank_source,
            "target_type": self.target_type.value,
            "loan_id": self.loan_id,
            "investor_id": self.investor_id,
            "expense_type_id": self.expense_type_id,
            "split_ratios": self.split_ratios.to_dict(),
            "confidence_score": self.confidence_score,
            "match_count": self.match_count,
            "last_used_at": self.last_used_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pattern":
        ratios = data.get("split_ratios") or {}
        return cls(
            id=data["id"],
            keyword_fingerprint=data.get("keyword_fingerprint", ""),
            description_pattern=data.get("description_pattern", ""),
            amount_min_cents=data.get("amount_min_cents"),
            amount_max_cents=data.get("amount_max_cents"),
            direction=TransactionDirection(data.get("direction", "debit")),
            bank_source=data.get("bank_source", ""),
            target_type=TargetType(data["target_type"]),
            loan_id=data.get("loan_id"),
            investor_id=data.get("investor_id"),
            expense_type_id=data.get("expense_type_id"),
            split_ratios=SplitRatios(
                capital=ratios.get("capital", 1.0),
                interest=ratios.get("interest", 0.0),
                fees=ratios.get("fees", 0.0),
            ),
            confidence_score=data.get("confidence_score", 0.6),
            match_count=data.get("match_count", 1),
            last_used_at=datetime.fromisoformat(data["last_used_at"]) if data.get("last_used_at") else utcnow(),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else utcnow(),
        )
