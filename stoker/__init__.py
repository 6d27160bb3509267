"""stoker package."""

__all__ = [
    "assets",
    "builder",
    "cli",
    "config",
    "constants",
    "control",
    "exceptions",
    "guest",
    "images",
    "locking",
    "models",
    "network",
    "registry",
    "relay",
    "runtime",
    "supervisor",
    "utils",
]
