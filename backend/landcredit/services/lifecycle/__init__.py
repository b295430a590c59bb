"""Claim lifecycle: state machine and controller."""
from .state_machine import STATE_CONFIG, ClaimStateMachine, InvalidTransitionError
from .claim_service import ClaimService

__all__ = ["STATE_CONFIG", "ClaimStateMachine", "InvalidTransitionError", "ClaimService"]
