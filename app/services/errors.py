"""Exception types shared by the review workflow services.

Transient errors (fetch, generate, send, post, billing, lookup) are logged by
the caller and left for the next sweep or the alert retry job. Auth and
configuration errors are not retried.
"""

from __future__ import annotations


class ReviewDeskError(Exception):
    """Base class for workflow errors."""


class ConfigurationError(ReviewDeskError):
    """Required configuration is missing; the process must not start."""


class SourceFetchError(ReviewDeskError):
    pass


class ReplyGenerationError(ReviewDeskError):
    pass


class NotificationSendError(ReviewDeskError):
    """The SMS gateway rejected or failed an outbound alert.

    ``notification_id`` is the id of the failed ``NotificationLog`` row, when
    one could be written.
    """

    def __init__(self, message: str, notification_id: str | None = None):
        super().__init__(message)
        self.notification_id = notification_id


class PlatformAuthError(ReviewDeskError):
    """Stored platform credentials were rejected; the owner must re-authorize."""


class BillingError(ReviewDeskError):
    pass


class CompetitorLookupError(ReviewDeskError):
    pass
