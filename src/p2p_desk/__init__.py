"""P2P marketplace desk: ad positioning and verified auto-release."""

__version__ = "0.1.0"
