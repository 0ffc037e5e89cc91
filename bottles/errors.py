from __future__ import annotations


class BottleError(Exception):
    """Base class for failures that are reported back to the requester."""


class ValidationError(BottleError):
    pass


class PermissionDenied(ValidationError):
    pass


class NotFoundError(BottleError):
    pass


class DeliveryFailure(BottleError):
    def __init__(self, label: str, attempts: int, cause: BaseException | None = None) -> None:
        self.label = label
        self.attempts = int(attempts)
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "no target accepted the message"
        super().__init__(f"{label} could not be delivered after {self.attempts} retries ({detail})")


class AssetFetchFailure(BottleError):
    def __init__(self, label: str, attempts: int, cause: BaseException | None = None) -> None:
        self.label = label
        self.attempts = int(attempts)
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "unknown error"
        super().__init__(f"media in {label} could not be stored after {self.attempts} retries ({detail})")
