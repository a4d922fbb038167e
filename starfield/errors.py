"""
Error taxonomy shared by every engine component.

  TransientNetworkError — remote call failed in a retryable way (cursor kept)
  RemoteServiceError    — remote call rejected (4xx / service-level error)
  SchemaMismatchError   — cached or persisted data has the wrong version/shape
  QuotaExceededError    — key-value store refused a write for size reasons
  StaleResultDiscarded  — async result arrived for a generation the user left
  NotFoundError         — member / post absent; rendered as a placeholder
"""


class StarfieldError(Exception):
    """Base class for all engine errors."""


class TransientNetworkError(StarfieldError):
    pass


class RemoteServiceError(StarfieldError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Remote service {status_code}: {message}")
        self.status_code = status_code


class SchemaMismatchError(StarfieldError):
    pass


class QuotaExceededError(StarfieldError):
    pass


class StaleResultDiscarded(StarfieldError):
    """Not user visible; raised by the guard and dropped at task boundaries."""


class NotFoundError(StarfieldError):
    pass
