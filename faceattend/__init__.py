"""Face-verified attendance engine: enrollment, verification, daily check-in/out and guest tokens."""

__version__ = "1.0.0"
