"""Remote router provisioning, drift reconciliation and management VPN tooling."""

__version__ = "0.1.0"
