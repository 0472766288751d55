"""Provisioning pipeline: turns a declarative intent into ordered primitive calls.

``build_plan`` produces the step sequence, ``run_plan`` executes it against
one router and reports each outcome to a ``StepRecorder``. ``configure_router``
is the store-less entry point; the persisted run in :mod:`routerprov.provisioning`
drives the same plan with a recorder that writes every step to the store.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from . import ledger
from .config import Config
from .models import (
    ConfigurationResult,
    ConnectionConfig,
    DeployedConfigEntry,
    FailedStep,
    FullConfigurationResult,
    ProvisioningPhase,
    RouterConfigIntent,
)
from .routeros import network, services
from .routeros.catalog import HOTSPOT_TIERS, PPPOE_TIERS, SPECIAL_PROFILES

logger = logging.getLogger(__name__)

StepAction = Callable[[ConnectionConfig], Awaitable[ConfigurationResult]]

# Step names reported in completed/failed step lists.
WAN_STEP = "WAN Interface Configuration"
LAN_STEP = "LAN Interfaces Configuration"
WIFI_STEP = "WiFi Configuration"
HOTSPOT_POOL_STEP = "Hotspot IP Pool"
HOTSPOT_BRIDGE_STEP = "Hotspot Bridge"
HOTSPOT_DHCP_STEP = "Hotspot DHCP Server"
HOTSPOT_PROFILES_STEP = "Hotspot User Profiles"
HOTSPOT_SPECIAL_STEP = "Hotspot Special Profiles"
HOTSPOT_SERVER_STEP = "Hotspot Server"
HOTSPOT_SECURE_AUTH_STEP = "Hotspot Secure Authentication"
HOTSPOT_NAT_STEP = "Hotspot NAT Rules"
PPPOE_POOL_STEP = "PPPoE IP Pool"
PPPOE_PROFILES_STEP = "PPPoE User Profiles"
PPPOE_SERVER_STEP = "PPPoE Server"
PPPOE_NAT_STEP = "PPPoE NAT Rules"
RUN_BOUNDARY_STEP = "Configuration Process"


@dataclass
class PipelineStep:
    """One primitive call plus the ledger entries it establishes on success.

    A failed ``required`` step abandons the rest of its block, because the
    remaining steps of the block depend on what it creates.
    """
    name: str
    action: StepAction
    tracks: List[DeployedConfigEntry] = field(default_factory=list)
    required: bool = False


@dataclass
class StepBlock:
    phase: ProvisioningPhase
    steps: List[PipelineStep]


class StepRecorder:
    """Collects step outcomes in memory. Subclasses also persist them."""

    def __init__(self):
        self.completed_steps: List[str] = []
        self.failed_steps: List[FailedStep] = []
        self.warnings: List[str] = []
        self.phase = ProvisioningPhase.NOT_STARTED

    async def enter_phase(self, phase: ProvisioningPhase) -> None:
        self.phase = phase

    async def step_completed(self, step: PipelineStep, result: ConfigurationResult) -> None:
        self.completed_steps.append(step.name)

    async def step_failed(self, step: PipelineStep, failure: FailedStep) -> None:
        self.failed_steps.append(failure)

    def warn(self, message: str) -> None:
        self.warnings.append(message)


def _network_of(address: str) -> str:
    return str(ipaddress.ip_interface(address).network)


def _host_of(address: str) -> str:
    return str(ipaddress.ip_interface(address).ip)


def build_plan(intent: RouterConfigIntent, settings: Optional[Config] = None) -> List[StepBlock]:
    """Translate an intent into ordered step blocks using the configured addressing."""
    settings = settings or Config()
    hs = settings.hotspot
    pp = settings.pppoe
    wan = intent.wan_interface or settings.router.default_wan_interface
    wlan = intent.wlan_interface or settings.router.default_wlan_interface
    blocks: List[StepBlock] = []

    blocks.append(StepBlock(ProvisioningPhase.CONFIGURING_WAN, [
        PipelineStep(WAN_STEP, lambda c: network.configure_wan_interface(c, wan),
                     tracks=[ledger.wan_interface(wan)]),
    ]))

    if intent.lan_addresses:
        blocks[-1].steps.append(
            PipelineStep(LAN_STEP, lambda c: network.configure_lan_interfaces(c, intent.lan_addresses)),
        )

    if intent.ssid:
        blocks.append(StepBlock(ProvisioningPhase.CONFIGURING_WIFI, [
            PipelineStep(WIFI_STEP, lambda c: network.configure_wifi(c, wlan, intent.ssid),
                         tracks=[ledger.wifi_config(wlan, intent.ssid)]),
        ]))

    if intent.hotspot_enabled:
        bridge_name = intent.bridge_name or hs.bridge_name
        bridge_ifaces = list(intent.bridge_interfaces or hs.bridge_interfaces)
        gateway_ip = _host_of(hs.bridge_address)
        dhcp_server = {"name": hs.dhcp_name, "interface": bridge_name, "address-pool": hs.pool_name}
        dhcp_network = {"address": hs.network, "gateway": gateway_ip, "dns-server": hs.dns_servers}
        hotspot_profile = {"name": hs.profile_name, "hotspot-address": gateway_ip, "dns-name": hs.dns_name}
        hotspot_server = {"name": hs.server_name, "interface": bridge_name,
                          "address-pool": hs.pool_name, "profile": hs.profile_name}
        hotspot_nat = {"chain": "srcnat", "src-address": hs.network, "out-interface": wan, "action": "masquerade"}

        hotspot_steps = [
            PipelineStep(HOTSPOT_POOL_STEP,
                         lambda c: network.create_ip_pools(c, [{"name": hs.pool_name, "ranges": hs.pool_ranges}]),
                         tracks=[ledger.ip_pool(hs.pool_name, hs.pool_ranges)], required=True),
            PipelineStep(HOTSPOT_BRIDGE_STEP,
                         lambda c: network.configure_bridge(c, bridge_name, hs.bridge_address, bridge_ifaces),
                         tracks=[ledger.bridge(bridge_name, hs.bridge_address)]
                         + [ledger.bridge_port(bridge_name, iface) for iface in bridge_ifaces],
                         required=True),
            PipelineStep(HOTSPOT_DHCP_STEP,
                         lambda c: network.configure_dhcp_server(c, dhcp_server, dhcp_network),
                         tracks=[ledger.dhcp_server(hs.dhcp_name, bridge_name, hs.pool_name),
                                 ledger.dhcp_network(hs.network, gateway_ip, hs.dns_servers)],
                         required=True),
            PipelineStep(HOTSPOT_PROFILES_STEP, services.create_hotspot_user_profiles,
                         tracks=[ledger.hotspot_user_profile(t.name, t.session_timeout, t.rate_limit)
                                 for t in HOTSPOT_TIERS]),
            PipelineStep(HOTSPOT_SPECIAL_STEP, services.create_special_profiles,
                         tracks=[ledger.hotspot_user_profile(t.name, t.session_timeout, t.rate_limit)
                                 for t in SPECIAL_PROFILES]),
            PipelineStep(HOTSPOT_SERVER_STEP,
                         lambda c: services.configure_hotspot(c, hotspot_profile, hotspot_server),
                         tracks=[ledger.hotspot_profile(hs.profile_name, gateway_ip, hs.dns_name),
                                 ledger.hotspot_server(hs.server_name, bridge_name, hs.pool_name, hs.profile_name)],
                         required=True),
        ]
        if hs.secure_auth:
            hotspot_steps.append(
                PipelineStep(HOTSPOT_SECURE_AUTH_STEP,
                             lambda c: services.configure_secure_hotspot_auth(c, hs.server_name)),
            )
        hotspot_steps.append(
            PipelineStep(HOTSPOT_NAT_STEP, lambda c: network.configure_nat(c, [hotspot_nat]),
                         tracks=[ledger.nat_rule("srcnat", hs.network, wan, "masquerade")]),
        )
        blocks.append(StepBlock(ProvisioningPhase.CONFIGURING_HOTSPOT, hotspot_steps))

    if intent.pppoe_enabled:
        pppoe_ifaces = list(intent.pppoe_interfaces) or [intent.bridge_name or pp.default_interface]
        servers = [{"service-name": pp.service_name if i == 0 else f"{pp.service_name}-{iface}",
                    "interface": iface, "default-profile": pp.default_profile}
                   for i, iface in enumerate(pppoe_ifaces)]
        pppoe_nat = {"chain": "srcnat", "src-address": pp.network, "out-interface": wan, "action": "masquerade"}

        blocks.append(StepBlock(ProvisioningPhase.CONFIGURING_PPPOE, [
            PipelineStep(PPPOE_POOL_STEP,
                         lambda c: network.create_ip_pools(c, [{"name": pp.pool_name, "ranges": pp.pool_ranges}]),
                         tracks=[ledger.ip_pool(pp.pool_name, pp.pool_ranges)], required=True),
            PipelineStep(PPPOE_PROFILES_STEP,
                         lambda c: services.create_pppoe_user_profiles(c, pp.local_address, pp.pool_name),
                         tracks=[ledger.ppp_profile(t.name, pp.local_address, pp.pool_name, t.rate_limit)
                                 for t in PPPOE_TIERS]),
            PipelineStep(PPPOE_SERVER_STEP, lambda c: services.configure_pppoe_servers(c, servers),
                         tracks=[ledger.pppoe_server(s["service-name"], s["interface"], s["default-profile"])
                                 for s in servers]),
            PipelineStep(PPPOE_NAT_STEP, lambda c: network.configure_nat(c, [pppoe_nat]),
                         tracks=[ledger.nat_rule("srcnat", pp.network, wan, "masquerade")]),
        ]))

    return blocks


async def run_plan(connection: ConnectionConfig, blocks: List[StepBlock], recorder: StepRecorder) -> None:
    """Execute every block in order.

    A failing step never stops the run; a failing required step abandons the
    remainder of its own block only. Gateway auth and transport failures
    propagate to the caller.
    """
    for block in blocks:
        await recorder.enter_phase(block.phase)
        for step in block.steps:
            logger.info(f"[{connection.address}] {step.name}...")
            result = await step.action(connection)
            if result.success:
                await recorder.step_completed(step, result)
                continue

            failure = FailedStep(step=step.name, error=result.error or result.message or "Unknown error")
            logger.warning(f"[{connection.address}] {step.name} failed: {failure.error}")
            await recorder.step_failed(step, failure)
            if step.required:
                logger.warning(f"[{connection.address}] Skipping rest of {block.phase.value}")
                break


async def configure_router(
    connection: ConnectionConfig,
    intent: RouterConfigIntent,
    settings: Optional[Config] = None,
) -> FullConfigurationResult:
    """Apply an intent to a router without touching the configuration store."""
    recorder = StepRecorder()
    try:
        await run_plan(connection, build_plan(intent, settings), recorder)
    except Exception as e:
        logger.exception(f"[{connection.address}] Configuration aborted")
        recorder.failed_steps.append(FailedStep(step=RUN_BOUNDARY_STEP, error=str(e)))

    return FullConfigurationResult(
        success=not recorder.failed_steps,
        completed_steps=recorder.completed_steps,
        failed_steps=recorder.failed_steps,
        warnings=recorder.warnings,
    )


def plan_summary(blocks: List[StepBlock]) -> Dict[str, List[str]]:
    return {block.phase.value: [step.name for step in block.steps] for block in blocks}
