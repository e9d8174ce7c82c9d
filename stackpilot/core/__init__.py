"""
Core module - автомат жизненного цикла и таксономия ошибок.
"""

from stackpilot.core.lifecycle import (
    AppState,
    Trigger,
    next_state,
    apply_transition,
    deadline_for
)

__all__ = [
    'AppState',
    'Trigger',
    'next_state',
    'apply_transition',
    'deadline_for'
]
