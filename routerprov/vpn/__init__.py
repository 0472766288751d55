"""Management VPN: WireGuard keys, address pool, concentrator and monitoring."""
