"""orgvault: organization-scoped encryption for sensitive records."""

__version__ = "1.0.0"
