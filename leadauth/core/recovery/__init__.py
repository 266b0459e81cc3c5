"""
Password recovery: email -> one-time code -> reset token -> new password.
"""

from __future__ import annotations

from leadauth.core.recovery.countdown import Countdown
from leadauth.core.recovery.machine import RecoveryStateMachine
from leadauth.core.recovery.models import RecoveryAttempt, RecoveryState, ResetToken

__all__ = ["Countdown", "RecoveryAttempt", "RecoveryState", "RecoveryStateMachine", "ResetToken"]
