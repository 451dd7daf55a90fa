"""Payment gateway hub: one transaction lifecycle across card and wallet providers."""

__version__ = "1.0.0"
