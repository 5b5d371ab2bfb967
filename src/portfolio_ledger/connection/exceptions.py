# src/portfolio_ledger/connection/exceptions.py

class PricingError(Exception):
    """Base exception for all pricing source related errors."""
    pass

class PricingUnavailableError(PricingError):
    """Raised when the price source cannot be reached or returns a server error."""
    pass

class PriceNotFoundError(PricingError):
    """Raised when a held asset has no price and the missing-price policy is "error"."""

    def __init__(self, assets):
        self.assets = sorted(assets)
        super().__init__(f"No price available for: {', '.join(self.assets)}")
