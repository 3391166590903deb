"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class ReconciliationError(Exception):
    """Base exception for all subscription reconciliation errors."""

    pass


class MalformedPayloadError(ReconciliationError):
    """Raised when a transport envelope or signed payload cannot be parsed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Malformed payload: {message}")


class VerificationFailedError(ReconciliationError):
    """Raised when a signature, certificate chain or store lookup rejects a payload."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Verification failed: {message}")


class HistoryFetchFailedError(ReconciliationError):
    """Raised when a store API call fails or times out. Retryable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"History fetch failed: {message}")


class UnknownEventKindError(ReconciliationError):
    """Raised when a vendor notification type has no internal event kind."""

    def __init__(self, platform: str, vendor_type: str) -> None:
        self.platform = platform
        self.vendor_type = vendor_type
        super().__init__(f"Unknown {platform} notification type: {vendor_type}")


class PlanNotFoundError(ReconciliationError):
    """Raised when a store product id has no entry in the plan catalog."""

    def __init__(self, product_id: str, platform: str) -> None:
        self.product_id = product_id
        self.platform = platform
        super().__init__(f"No plan configured for {platform} product {product_id}")


class DuplicateTransactionError(ReconciliationError):
    """Raised when a ledger entry already exists for a transaction id."""

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"Ledger entry already exists for transaction {transaction_id}")


class SubscriptionExpiredError(ReconciliationError):
    """Raised when a client-submitted receipt resolves to an expired subscription."""

    def __init__(self, external_anchor_id: str) -> None:
        self.external_anchor_id = external_anchor_id
        super().__init__(f"Subscription {external_anchor_id} has expired")


class ProviderNotConfiguredError(ReconciliationError):
    """Raised when store credentials are missing for a requested operation."""

    def __init__(self, platform: str) -> None:
        self.platform = platform
        super().__init__(f"{platform} provider is not configured")


class AuthenticationError(ReconciliationError):
    """Raised when authentication fails (missing or invalid bearer token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
