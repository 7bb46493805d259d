"""Reconciliation errors and outcome codes.

Only store-level and provider-level failures are exceptions; they propagate
to the webhook route, which answers 500 so the provider redelivers later.
Every other condition is reported as an Outcome string and acknowledged.
"""


class ReconciliationError(Exception):
    """Base class for hard failures of a single invocation."""


class StoreUnavailable(ReconciliationError):
    """The database could not be reached or rejected a statement."""


class AtomicCommitFailure(ReconciliationError):
    """The atomic scope for an event could not be committed."""


class ProviderError(ReconciliationError):
    """A supplementary lookup against a provider API failed."""


class SignatureVerificationError(Exception):
    """The inbound notification failed the provider authenticity check."""


class Outcome:
    """Result codes returned to the webhook layer (all acknowledged with 200)."""

    PROCESSED = "processed"
    DUPLICATE = "already_processed"
    ALREADY_IN_STATE = "already_in_state"
    UNMATCHED = "unmatched_transaction"
    MISSING_METADATA = "missing_metadata"
    ILLEGAL_TRANSITION = "illegal_transition"
    USER_NOT_FOUND = "user_not_found"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    IGNORED = "ignored"
