"""Automation error taxonomy.

Every failure a challenge run can end with maps onto one of these types,
so a reviewer can tell target-site drift (re-learn) from a transient
condition (retry) from the reason string alone.
"""

from __future__ import annotations


class AutomationError(Exception):
    """Base class. `reason` is the short, user-visible explanation."""

    def __init__(self, reason: str, step_order: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.step_order = step_order


class TargetNotFound(AutomationError):
    """No challenge portal could be located; a human must supply the URL."""


class TicketNotFound(AutomationError):
    """The portal has no ticket for this PCN/registration pair."""


class SelectorTimeout(AutomationError):
    """A locator or waitFor condition never resolved within its timeout."""


class AntiBotDetected(AutomationError):
    """The portal reported automated activity."""

    def __init__(self, reason: str, attempts: int = 0) -> None:
        super().__init__(reason)
        self.attempts = attempts


class CaptchaUnresolved(AutomationError):
    """The CAPTCHA service failed or timed out."""


class AutomationNotReady(AutomationError):
    """A recipe was handed to the runner without being VERIFIED."""


class StorageUploadFailure(AutomationError):
    """An evidence artifact could not be written to object storage."""


class UnresolvedPlaceholder(AutomationError):
    """A step value still holds a {{token}} the context cannot fill."""


class InvalidTransition(AutomationError):
    """A recipe lifecycle transition that the state machine does not allow."""


class ChallengeFinalized(AutomationError):
    """A terminal challenge record was about to be mutated."""
