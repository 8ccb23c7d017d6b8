"""dhyve package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "images",
    "leases",
    "models",
    "remote",
    "store",
    "utils",
    "vm",
]
