"""FSM package for payment and batch state management."""

from rentflow.fsm.states import PaymentStatus, BatchStatus, ProviderType
from rentflow.fsm.machine import PaymentStateMachine

__all__ = ["PaymentStatus", "BatchStatus", "ProviderType", "PaymentStateMachine"]
