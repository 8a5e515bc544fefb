"""Market lifecycle: state machine, slug allocation, outcome reconciliation."""

from predlaunch.lifecycle.outcomes import OutcomePlan, OutcomeReconciler
from predlaunch.lifecycle.slug import SlugAllocator, derive_title, to_slug
from predlaunch.lifecycle.state_machine import LifecycleStateMachine

__all__ = [
    "LifecycleStateMachine",
    "OutcomePlan",
    "OutcomeReconciler",
    "SlugAllocator",
    "derive_title",
    "to_slug",
]
