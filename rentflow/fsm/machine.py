"""
Payment state machine - transition rules and batch counter bookkeeping.
"""

import logging
from typing import Dict, Union

from rentflow.fsm.states import PaymentStatus

logger = logging.getLogger(__name__)


class PaymentStateMachine:
    """
    Enforces monotonic payment transitions.
    
    pending -> processing -> terminal is the only path. A terminal status
    never changes again, and a status never moves backwards.
    """
    
    TRANSITIONS: Dict[PaymentStatus, frozenset] = {
        PaymentStatus.PENDING: frozenset({
            PaymentStatus.PROCESSING,
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        }),
        PaymentStatus.PROCESSING: frozenset({
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        }),
    }
    
    @classmethod
    def can_transition(
        cls,
        current: Union[PaymentStatus, str],
        target: Union[PaymentStatus, str],
    ) -> bool:
        current = PaymentStatus(current)
        target = PaymentStatus(target)
        return target in cls.TRANSITIONS.get(current, frozenset())
    
    @staticmethod
    def counter_deltas(
        current: Union[PaymentStatus, str],
        target: Union[PaymentStatus, str],
    ) -> Dict[str, int]:
        """
        Batch counter changes for moving one item from current to target.
        
        Returns an empty dict when both statuses share a counter
        (e.g. pending -> processing).
        """
        old_column = PaymentStatus(current).counter_column
        new_column = PaymentStatus(target).counter_column
        if old_column == new_column:
            return {}
        return {old_column: -1, new_column: 1}
