"""caregate: privacy and capability-based access control for family medical records."""

__version__ = "0.1.0"
