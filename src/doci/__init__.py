"""DOCI: registration and resolution of on-chain anchored identifiers."""

__version__ = "0.1.0"
