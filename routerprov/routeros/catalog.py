"""Versioned service-tier tables seeded onto every router."""

from dataclasses import dataclass
from typing import Dict, List

CATALOG_VERSION = 1


@dataclass(frozen=True)
class HotspotTier:
    name: str
    session_timeout: str
    idle_timeout: str
    rate_limit: str
    shared_users: int = 1
    keepalive_timeout: str = "2m"
    status_autorefresh: str = "1m"
    transparent_proxy: bool = True

    def payload(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "session-timeout": self.session_timeout,
            "idle-timeout": self.idle_timeout,
            "keepalive-timeout": self.keepalive_timeout,
            "status-autorefresh": self.status_autorefresh,
            "shared-users": str(self.shared_users),
            "rate-limit": self.rate_limit,
            "transparent-proxy": "yes" if self.transparent_proxy else "no",
        }


@dataclass(frozen=True)
class PPPoETier:
    name: str
    rate_limit: str
    dns_server: str = "8.8.8.8,8.8.4.4"
    session_timeout: str = "0"
    idle_timeout: str = "0"

    def payload(self, local_address: str, remote_pool: str) -> Dict[str, str]:
        return {
            "name": self.name,
            "local-address": local_address,
            "remote-address": remote_pool,
            "dns-server": self.dns_server,
            "rate-limit": self.rate_limit,
            "session-timeout": self.session_timeout,
            "idle-timeout": self.idle_timeout,
        }


HOTSPOT_TIERS: List[HotspotTier] = [
    HotspotTier("1hour-10ksh", "1h", "10m", "2M/5M"),
    HotspotTier("3hours-25ksh", "3h", "15m", "3M/6M"),
    HotspotTier("5hours-40ksh", "5h", "20m", "4M/8M"),
    HotspotTier("12hours-70ksh", "12h", "30m", "5M/10M"),
    HotspotTier("1day-100ksh", "1d", "1h", "6M/12M"),
    HotspotTier("3days-250ksh", "3d", "2h", "8M/15M", shared_users=2),
    HotspotTier("1week-400ksh", "1w", "4h", "10M/20M", shared_users=2),
    HotspotTier("1month-1200ksh", "30d", "12h", "15M/25M", shared_users=3),
]

PPPOE_TIERS: List[PPPoETier] = [
    PPPoETier("home-basic-5mbps", "5M/5M"),
    PPPoETier("home-standard-10mbps", "10M/10M"),
    PPPoETier("home-premium-20mbps", "20M/20M"),
    PPPoETier("business-50mbps", "50M/50M"),
]

SPECIAL_PROFILES: List[HotspotTier] = [
    HotspotTier("trial-15min", "15m", "5m", "1M/2M",
                keepalive_timeout="1m", status_autorefresh="30s"),
    HotspotTier("admin-unlimited", "0", "0", "50M/50M", transparent_proxy=False),
]

# Hotspot server profile settings enforced on every run.
SECURE_HOTSPOT_PROFILE = {
    "login-by": "http-chap",
    "shared-users": "1",
    "transparent-proxy": "yes",
}
