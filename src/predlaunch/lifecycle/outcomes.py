"""Minimal insert/update/delete plan turning a market's outcomes into a desired list."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from predlaunch.models.market import Outcome, OutcomeInput


@dataclass
class OutcomePlan:
    """Apply in order: deletes, then updates, then inserts."""

    to_insert: list[Outcome] = field(default_factory=list)
    to_update: list[Outcome] = field(default_factory=list)
    to_delete: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.to_insert or self.to_update or self.to_delete)


class OutcomeReconciler:
    """Match desired outcomes to existing ones by id; ordinal = position in desired list."""

    def reconcile(
        self,
        existing: Sequence[Outcome],
        desired: Sequence[OutcomeInput],
        market_id: str | None = None,
    ) -> OutcomePlan:
        by_id = {o.id: o for o in existing if o.id is not None}
        referenced: set[str] = set()
        plan = OutcomePlan()
        for idx, want in enumerate(desired):
            current = by_id.get(want.id) if want.id is not None else None
            # A repeated id only matches once; later copies become inserts
            if current is not None and current.id not in referenced:
                referenced.add(current.id)
                if (current.label, current.color, current.idx) != (want.label, want.color, idx):
                    plan.to_update.append(
                        current.model_copy(update={"label": want.label, "color": want.color, "idx": idx})
                    )
            else:
                plan.to_insert.append(
                    Outcome(market_id=market_id, label=want.label, color=want.color, idx=idx)
                )
        plan.to_delete = [o.id for o in existing if o.id is not None and o.id not in referenced]
        return plan
