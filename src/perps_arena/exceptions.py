"""
Exception hierarchy for the perps arena.

Losing a concurrent race (a transition already claimed, a leave on an
inactive participant, a duplicate join) is not an error: those operations
return ``None`` or ``False`` instead of raising.
"""

from typing import Optional


class ArenaError(Exception):
    """Base class for all arena errors."""


class NotFoundError(ArenaError):
    """A competition, agent or participant does not exist."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class CapacityExceededError(ArenaError):
    """Registering would push a competition above max_participants."""

    def __init__(self, competition_id, max_participants: int, requested: int = 1):
        self.competition_id = competition_id
        self.max_participants = max_participants
        self.requested = requested
        super().__init__(
            f"Competition {competition_id} is full "
            f"(max {max_participants} participants, {requested} requested)"
        )


class ProviderFetchError(ArenaError):
    """The data provider failed, timed out, or returned a malformed payload."""

    def __init__(self, message: str, provider: Optional[str] = None, wallet: Optional[str] = None):
        self.provider = provider
        self.wallet = wallet
        super().__init__(message)


class PersistenceError(ArenaError):
    """A storage transaction failed and was rolled back."""


class ValidationError(ArenaError):
    """Input failed validation."""


class InvalidConfigurationError(ValidationError):
    """Competition or provider configuration is missing or malformed."""
