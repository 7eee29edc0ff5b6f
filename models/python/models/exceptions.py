from typing import Optional


class AuctionError(Exception):
    """Base exception for the bidding core. Carries an HTTP-equivalent status."""
    status_code: int = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ClientError(AuctionError):
    """Raised for rule violations the caller can correct or must accept."""
    status_code = 400


class BidRejectedError(ClientError):
    """Raised when a bid breaks an amount rule (start price, increment, not higher)."""
    pass


class AuctionClosedError(ClientError):
    """Raised when bidding on an auction that has not started or has ended."""
    pass


class AuctionStillOpenError(ClientError):
    """Raised when asking for the result of an auction that is still running."""
    pass


class InvalidAuctionConfigError(ClientError):
    """Raised when creating an auction with impossible pricing or timing."""
    pass


class BidderBannedError(ClientError):
    """Raised when a banned or inactive account tries to bid."""
    status_code = 403


class AuctionNotFoundError(ClientError):
    status_code = 404


class BidderNotFoundError(ClientError):
    status_code = 404


class ServerError(AuctionError):
    """Raised for failures the caller cannot fix; the cause is kept for logs."""
    status_code = 500


class StorageError(ServerError):
    """Raised when a storage read or write fails after bounded retries."""
    status_code = 503


class LockTimeoutError(ServerError):
    """Raised when the per-auction bid lock cannot be acquired in time."""
    status_code = 503


class LeaderChangedError(AuctionError):
    """Raised by a ledger commit whose expected previous leader is stale.

    Handled inside the bid placement retry loop; never reaches callers.
    """
    status_code = 409
