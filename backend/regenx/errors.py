from __future__ import annotations

from typing import Any, Dict, List, Optional


class FamiliarError(RuntimeError):
    """Base class for expected, caller-recoverable engine failures."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def detail(self) -> Any:
        return self.message


class ValidationError(FamiliarError):
    """Raised when caller input has the wrong shape."""


class FamiliarNotFoundError(FamiliarError):
    status_code = 404

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Familiar not found for user {user_id}")
        self.user_id = user_id


class CooldownError(FamiliarError):
    status_code = 429

    def __init__(self, action: str, remaining_seconds: int) -> None:
        super().__init__(f"Action on cooldown. {remaining_seconds} seconds remaining.")
        self.action = action
        self.remaining_seconds = remaining_seconds

    @property
    def detail(self) -> Dict[str, Any]:
        return {"message": self.message, "action": self.action, "remaining_seconds": self.remaining_seconds}


class InsufficientPointsError(FamiliarError):
    def __init__(self, available: int, required: int) -> None:
        super().__init__(f"Insufficient evolution points. You have {available} EP, but need {required} EP.")
        self.available = available
        self.required = required

    @property
    def detail(self) -> Dict[str, Any]:
        return {"message": self.message, "available": self.available, "required": self.required}


class MutationConflictError(FamiliarError):
    status_code = 409

    def __init__(self, conflicts: List[str], suggestions: Optional[List[str]] = None) -> None:
        suggestions = list(suggestions or [])
        message = f"Mutation incompatible: {'; '.join(conflicts)}."
        if suggestions:
            message = f"{message} Try these instead: {', '.join(suggestions)}"
        super().__init__(message)
        self.conflicts = list(conflicts)
        self.suggestions = suggestions

    @property
    def detail(self) -> Dict[str, Any]:
        return {"message": self.message, "conflicts": self.conflicts, "suggestions": self.suggestions}


class NoCompatibleMutationError(FamiliarError):
    status_code = 409


class SessionExpiredError(FamiliarError):
    status_code = 410

    def __init__(self, session_id: str) -> None:
        super().__init__("Invalid or expired mutation session")
        self.session_id = session_id


class InvalidOptionError(FamiliarError):
    def __init__(self, option_id: str) -> None:
        super().__init__(f"Invalid option selected: {option_id}")
        self.option_id = option_id


class StoreUnavailableError(FamiliarError):
    """Raised when a store write still fails after every retry."""

    status_code = 503
