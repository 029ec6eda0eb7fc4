"""nixvm: run a NixOS Linux builder VM and reach it over SSH."""

__all__ = [
    "cli",
    "config",
    "constants",
    "discovery",
    "domain",
    "exceptions",
    "hypervisor",
    "idle",
    "models",
    "pidfile",
    "shares",
    "ssh",
    "utils",
    "vm",
]
