"""kernel-vm-runner package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "images",
    "installer",
    "launcher",
    "models",
    "orchestrator",
    "readiness",
    "remote",
    "tools",
    "utils",
]
