"""Webhook failure taxonomy.

Raised inside the engine and turned into a ``WebhookResult`` at its boundary.
Only ``PersistenceFailure`` is retryable: nothing was committed, so the provider's
redelivery is safe.
"""


class WebhookError(Exception):
    outcome = "processing_error"
    status_code = 200
    retryable = False
    accepted = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.outcome)
        self.message = message or self.outcome


class MalformedPayload(WebhookError):
    outcome = "malformed_payload"
    status_code = 400


class SignatureRejected(WebhookError):
    outcome = "invalid_signature"
    status_code = 401


class IdentityNotFound(WebhookError):
    outcome = "identity_not_found"


class UnsupportedEvent(WebhookError):
    outcome = "unsupported_event"
    accepted = True


class NoValidOffer(WebhookError):
    outcome = "no_valid_offer"
    accepted = True


class DuplicateDelivery(WebhookError):
    outcome = "duplicate"
    accepted = True


class PersistenceFailure(WebhookError):
    outcome = "persistence_failure"
    status_code = 503
    retryable = True


class ConcurrentUpdate(Exception):
    """The stored row changed between read and write."""

    def __init__(self, user_id: str, expected_version: int, actual_version=None):
        super().__init__(
            f"user {user_id} changed concurrently (expected version {expected_version}, found {actual_version})"
        )
        self.user_id = user_id
        self.expected_version = expected_version
        self.actual_version = actual_version
