"""
IP Reputation Detection

Checks the user's most recent IP address in the last 24 hours against
a reputation source. The built-in source is a stand-in that treats
private address ranges as VPN egress; production deployments plug in
a real lookup.
"""

from datetime import timedelta
from typing import Optional, Protocol

from .detector import BaseInvestigator, InvestigationFinding


class IPReputationSource(Protocol):
    def is_vpn(self, ip: str) -> bool: ...

    def is_proxy(self, ip: str) -> bool: ...

    def is_tor(self, ip: str) -> bool: ...


class StaticIPReputation:
    """Placeholder reputation source with no external data."""

    vpn_prefixes = ("10.", "192.168.")

    def is_vpn(self, ip: str) -> bool:
        return ip.startswith(self.vpn_prefixes)

    def is_proxy(self, ip: str) -> bool:
        return False

    def is_tor(self, ip: str) -> bool:
        return False


class IPReputationInvestigator(BaseInvestigator):

    name = "ip_reputation"

    def __init__(
        self,
        store,
        clock=None,
        reputation: Optional[IPReputationSource] = None,
        window: timedelta = timedelta(hours=24),
    ):
        super().__init__(store, clock)
        self.reputation = reputation or StaticIPReputation()
        self.window = window

    async def investigate_user(self, savvy_user_id: str, app: str) -> Optional[InvestigationFinding]:
        events = await self.user_events(savvy_user_id, self.window, context_key="ip_address")
        if not events:
            return None

        ip = str(events[0].ip_address)
        if self.reputation.is_vpn(ip):
            risk_factor, evidence = "vpn_usage", "VPN detected"
        elif self.reputation.is_proxy(ip):
            risk_factor, evidence = "proxy_usage", "Proxy detected"
        elif self.reputation.is_tor(ip):
            risk_factor, evidence = "tor_usage", "Tor network detected"
        else:
            return None

        return self.finding(
            risk_factor=risk_factor,
            risk_score=0.6,
            evidence=evidence,
            confidence=0.8,
        )
