"""
Holdis Reconciler - Error Taxonomy

Retryable errors leave idempotency entries pending for the next polling cycle.
Terminal errors mark them failed and raise an alert for manual intervention.
"""


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""

    retryable = False


# ============================================================
# Retryable
# ============================================================

class ChainReadError(ReconcilerError):
    """RPC provider failed or timed out while reading chain state."""

    retryable = True


class TransientCustodyError(ReconcilerError):
    """Custody API timeout, connection failure, 5xx or rate limit."""

    retryable = True

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class PollTimeoutError(TransientCustodyError):
    """Transaction still pending after the polling budget was spent."""

    def __init__(self, provider_ref, attempts):
        super().__init__(
            f"Transfer {provider_ref} still pending after {attempts} status polls"
        )
        self.provider_ref = provider_ref
        self.attempts = attempts


class InsufficientLiquidityError(ReconcilerError):
    """Operating wallet cannot cover the movement or its network fee."""

    retryable = True

    def __init__(self, message, required=None, available=None, asset=None):
        super().__init__(message)
        self.required = required
        self.available = available
        self.asset = asset


# ============================================================
# Terminal
# ============================================================

class PermanentRejectionError(ReconcilerError):
    """Custody provider refused the request (unsupported asset, bad address...)."""

    def __init__(self, message, status_code=None, provider_error=None):
        super().__init__(message)
        self.status_code = status_code
        self.provider_error = provider_error


class IdempotencyConflict(ReconcilerError):
    """Same idempotency key submitted with a different payload."""

    def __init__(self, key, stored_hash, new_hash):
        super().__init__(
            f"Idempotency key {key} reused with a different payload "
            f"(stored {stored_hash[:12]}, got {new_hash[:12]})"
        )
        self.key = key
