"""Open the host firewall for cluster traffic.

Some node images ship a host firewall whose INPUT and FORWARD chains drop
most packets. When a chain's policy is DROP, TCP and UDP accept rules are
appended so pods and control-plane traffic can flow.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..commands import Runner, run_command

LOGGER = logging.getLogger(__name__)

CHAINS = ("INPUT", "FORWARD")
PROTOCOLS = ("TCP", "UDP")


@dataclass(slots=True)
class FirewallResult:
    """Chains that were opened and the rules appended to them."""

    opened: list[str] = field(default_factory=list)
    rules: list[list[str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.rules)


@dataclass(slots=True)
class FirewallConfigurator:
    """Append accept rules to chains whose default policy is DROP."""

    iptables_bin: str = "iptables"
    runner: Runner = run_command

    def chain_drops(self, chain: str) -> bool:
        """Return True when *chain* reports a DROP policy."""
        listing = self.runner([self.iptables_bin, "-L", chain], check=False)
        if listing.returncode != 0:
            LOGGER.warning("Cannot list %s chain: %s", chain, (listing.stderr or "").strip())
            return False
        return f"Chain {chain} (policy DROP)" in (listing.stdout or "")

    def configure(self) -> FirewallResult:
        """Inspect each chain and open the ones that drop traffic."""
        result = FirewallResult()
        for chain in CHAINS:
            if not self.chain_drops(chain):
                continue
            LOGGER.info("Add rules to accept all %s TCP/UDP packets", chain)
            for protocol in PROTOCOLS:
                rule = [self.iptables_bin, "-A", chain, "-w", "-p", protocol, "-j", "ACCEPT"]
                self.runner(rule)
                result.rules.append(rule)
            result.opened.append(chain)
        return result


__all__ = ["CHAINS", "FirewallConfigurator", "FirewallResult"]
