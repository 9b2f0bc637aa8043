# backend/ttofin/services/allocator.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Sequence

from .calculator import CENT, HUNDRED, ZERO, round_money, to_decimal
from .errors import ReconciliationError, ValidationError
from .persons import Person


@dataclass(frozen=True)
class ShareInput:
    person: Person
    share_percentage: Decimal
    is_leader: bool = False


@dataclass(frozen=True)
class Allocation:
    person: Person
    share_percentage: Decimal
    amount: Decimal
    is_leader: bool = False


def allocate_distribution(distributable_amount: Any, shares: Sequence[ShareInput]) -> List[Allocation]:
    """
    Dağıtılabilir tutarı temsilcilere pay oranında böler.

    Her pay ayrı ayrı 2 haneye yuvarlanır; yuvarlamadan kalan fark
    (distributable - Σ parça) proje yürütücüsünün payına eklenir, böylece
    toplam her zaman dağıtılabilir tutara birebir eşit olur.
    """
    total = to_decimal(distributable_amount, "distributable_amount")
    if total < ZERO:
        raise ValidationError("distributable_amount cannot be negative")
    total = round_money(total)

    if not shares:
        raise ReconciliationError("At least one representative share is required")

    seen = set()
    share_sum = ZERO
    for s in shares:
        pct = to_decimal(s.share_percentage, "share_percentage")
        if pct <= ZERO or pct > HUNDRED:
            raise ReconciliationError(f"Share percentage must be in (0, 100], got {pct}")
        if s.person in seen:
            raise ReconciliationError(f"{s.person.kind} {s.person.id} appears more than once")
        seen.add(s.person)
        share_sum += pct
    if share_sum != HUNDRED:
        raise ReconciliationError(f"Share percentages must sum to 100, got {share_sum}")

    leaders = [i for i, s in enumerate(shares) if s.is_leader]
    if len(leaders) != 1:
        raise ReconciliationError(f"Exactly one project leader is required, got {len(leaders)}")
    leader_idx = leaders[0]

    amounts = [round_money(total * to_decimal(s.share_percentage) / HUNDRED) for s in shares]
    residual = total - sum(amounts, ZERO)

    # Her parça en fazla yarım kuruş sapar; daha büyük fark hatalı girdi demektir
    if abs(residual) > CENT * len(shares):
        raise ReconciliationError(f"Rounding residual {residual} exceeds tolerance")
    amounts[leader_idx] += residual
    if amounts[leader_idx] < ZERO or sum(amounts, ZERO) != total:
        raise ReconciliationError("Distribution amounts cannot be reconciled to distributable amount")

    return [
        Allocation(
            person=s.person,
            share_percentage=to_decimal(s.share_percentage),
            amount=amt,
            is_leader=s.is_leader,
        )
        for s, amt in zip(shares, amounts)
    ]
