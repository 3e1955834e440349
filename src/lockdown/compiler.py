# Orion Lockdown
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Orion Lockdown.
#
# Orion Lockdown is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Policy compiler.

Translates an AllowSet plus the mandatory exceptions into an ordered,
complete rule list per address family. The output is a full replacement
for the chains this tool owns, never a diff against the live table, so
leftovers from a crashed earlier run cannot survive into the new policy.

Egress chain (LOCKDOWN-OUT), in order:
  1. loopback                          ACCEPT
  2. ESTABLISHED,RELATED               ACCEPT
  3. DNS (udp+tcp/53)                  ACCEPT   any, or nameservers only
  4. SSH (tcp/22) to AllowSet          ACCEPT   when allow_ssh (off by default)
  5. AllowSet                          ACCEPT   one ipset match, or per CIDR
  6. infrastructure ranges, Docker DNS ACCEPT
  7. everything else                   DROP | REJECT

Ingress chain (LOCKDOWN-IN) is a single RETURN unless ``ingress: drop``.

With ``ipv6: false`` the IPv6 ruleset keeps only loopback and
established traffic, so an IPv4-only allowlist never leaves IPv6 egress
wide open.

Nothing here touches the kernel; rendering produces the text fed to
``ipset restore`` and ``iptables-restore --noflush`` by the applier.
"""

from __future__ import annotations

import enum
import ipaddress
import logging
from dataclasses import dataclass, field

from .addresses import IPAddress, IPNetwork
from .aggregator import AllowSet
from .config import LockdownConfig
from .environment import DOCKER_EMBEDDED_DNS, Infrastructure
from .log import stage_extra

logger = logging.getLogger("lockdown.compiler")

EGRESS_CHAIN = "LOCKDOWN-OUT"
INGRESS_CHAIN = "LOCKDOWN-IN"

# Built-in chain -> owned chain it jumps to
HOOKS: dict[str, str] = {"OUTPUT": EGRESS_CHAIN, "INPUT": INGRESS_CHAIN}

SET_NAMES: dict[int, str] = {4: "lockdown-allow4", 6: "lockdown-allow6"}
REJECT_WITH: dict[int, str] = {4: "icmp-admin-prohibited", 6: "icmp6-adm-prohibited"}

DNS_PORT = 53
SSH_PORT = 22
ESTABLISHED = ("ESTABLISHED", "RELATED")


class Action(str, enum.Enum):
    """Rule targets."""

    ACCEPT = "ACCEPT"
    DROP = "DROP"
    REJECT = "REJECT"
    RETURN = "RETURN"

    @property
    def is_deny(self) -> bool:
        return self in (Action.DROP, Action.REJECT)


@dataclass(frozen=True)
class Packet:
    """A probe used to simulate a verdict.

    ``address`` and ``port`` describe the remote end: the destination for
    egress, the source for ingress.
    """

    address: IPAddress
    direction: str = "out"
    protocol: str = "tcp"
    port: int = 443
    state: str = "NEW"
    interface: str = "eth0"

    @classmethod
    def egress(cls, address: str | IPAddress, protocol: str = "tcp", port: int = 443) -> Packet:
        if isinstance(address, str):
            address = ipaddress.ip_address(address)
        return cls(address=address, direction="out", protocol=protocol, port=port)


@dataclass(frozen=True)
class FirewallRule:
    """One ordered directive in an owned chain."""

    chain: str
    action: Action
    protocol: str | None = None
    destination: IPNetwork | None = None
    source: IPNetwork | None = None
    dport: int | None = None
    sport: int | None = None
    out_interface: str | None = None
    in_interface: str | None = None
    states: tuple[str, ...] = ()
    match_set: str | None = None
    reject_with: str | None = None
    comment: str = ""

    @property
    def matches_everything(self) -> bool:
        return not any(
            (
                self.protocol,
                self.destination,
                self.source,
                self.dport,
                self.sport,
                self.out_interface,
                self.in_interface,
                self.states,
                self.match_set,
            )
        )

    def render(self) -> str:
        """Render as one iptables-restore ``-A`` line."""
        parts = ["-A", self.chain]
        if self.in_interface:
            parts += ["-i", self.in_interface]
        if self.out_interface:
            parts += ["-o", self.out_interface]
        if self.source is not None:
            parts += ["-s", str(self.source)]
        if self.destination is not None:
            parts += ["-d", str(self.destination)]
        if self.protocol:
            parts += ["-p", self.protocol]
            if self.sport is not None:
                parts += ["--sport", str(self.sport)]
            if self.dport is not None:
                parts += ["--dport", str(self.dport)]
        if self.states:
            parts += ["-m", "conntrack", "--ctstate", ",".join(self.states)]
        if self.match_set:
            direction = "dst" if self.chain == EGRESS_CHAIN else "src"
            parts += ["-m", "set", "--match-set", self.match_set, direction]
        parts += ["-j", self.action.value]
        if self.action is Action.REJECT and self.reject_with:
            parts += ["--reject-with", self.reject_with]
        return " ".join(parts)

    def matches(self, packet: Packet, set_members: frozenset[IPNetwork] = frozenset()) -> bool:
        """Simulate the kernel match for ``packet``."""
        egress = packet.direction == "out"
        if self.protocol and self.protocol != packet.protocol:
            return False
        if self.destination is not None and (not egress or packet.address not in self.destination):
            return False
        if self.source is not None and (egress or packet.address not in self.source):
            return False
        if self.dport is not None and (not egress or packet.port != self.dport):
            return False
        if self.sport is not None and (egress or packet.port != self.sport):
            return False
        if self.out_interface and (not egress or packet.interface != self.out_interface):
            return False
        if self.in_interface and (egress or packet.interface != self.in_interface):
            return False
        if self.states and packet.state not in self.states:
            return False
        if self.match_set and not any(packet.address in net for net in set_members):
            return False
        return True


@dataclass
class Ruleset:
    """Everything to commit for one address family."""

    version: int
    egress: list[FirewallRule] = field(default_factory=list)
    ingress: list[FirewallRule] = field(default_factory=list)
    set_name: str | None = None
    set_members: list[IPNetwork] = field(default_factory=list)

    @property
    def rules(self) -> list[FirewallRule]:
        return [*self.egress, *self.ingress]

    @property
    def rule_count(self) -> int:
        return len(self.egress) + len(self.ingress)

    def terminal_egress(self) -> FirewallRule | None:
        return self.egress[-1] if self.egress else None


@dataclass
class FirewallPolicy:
    """Compiled policy for both address families."""

    ipv4: Ruleset
    ipv6: Ruleset

    def rulesets(self) -> list[Ruleset]:
        return [self.ipv4, self.ipv6]

    @property
    def rule_count(self) -> int:
        return self.ipv4.rule_count + self.ipv6.rule_count


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


def _egress(action: Action, comment: str, **match) -> FirewallRule:
    return FirewallRule(chain=EGRESS_CHAIN, action=action, comment=comment, **match)


def _ingress(action: Action, comment: str, **match) -> FirewallRule:
    return FirewallRule(chain=INGRESS_CHAIN, action=action, comment=comment, **match)


def _terminal_rule(chain: str, version: int, egress_action: str) -> FirewallRule:
    if egress_action == "reject":
        return FirewallRule(
            chain=chain,
            action=Action.REJECT,
            reject_with=REJECT_WITH[version],
            comment="default deny",
        )
    return FirewallRule(chain=chain, action=Action.DROP, comment="default deny")


def _dns_rules(version: int, config: LockdownConfig, infra: Infrastructure) -> list[FirewallRule]:
    targets: list[IPNetwork | None]
    if config.restrict_dns_to_nameservers:
        targets = [
            ipaddress.ip_network(ns)
            for ns in infra.nameservers
            if ns.version == version and not ns.is_loopback
        ]
        if not targets:
            logger.warning(
                "DNS restricted to nameservers but none are remote -- only loopback DNS allowed",
                extra=stage_extra("compiler", version=version),
            )
    else:
        targets = [None]

    return [
        _egress(Action.ACCEPT, "dns", protocol=proto, destination=target, dport=DNS_PORT)
        for target in targets
        for proto in ("udp", "tcp")
    ]


def _compile_family(
    version: int,
    allow_set: AllowSet,
    infra: Infrastructure,
    config: LockdownConfig,
) -> Ruleset:
    ruleset = Ruleset(version=version)
    out = ruleset.egress

    # (a) loopback, (b) return traffic
    out.append(_egress(Action.ACCEPT, "loopback", out_interface="lo"))
    out.append(_egress(Action.ACCEPT, "established", states=ESTABLISHED))

    enabled = version == 4 or config.ipv6
    if enabled:
        # (c) DNS
        out.extend(_dns_rules(version, config, infra))

        members = allow_set.networks(version)
        if config.use_ipset:
            ruleset.set_name = SET_NAMES[version]
            ruleset.set_members = members

        # SSH only to hosts that are already allowed
        if config.allow_ssh:
            ssh = {"protocol": "tcp", "dport": SSH_PORT}
            if ruleset.set_name:
                out.append(_egress(Action.ACCEPT, "ssh", match_set=ruleset.set_name, **ssh))
            else:
                out.extend(_egress(Action.ACCEPT, "ssh", destination=net, **ssh) for net in members)

        # (d) allow set
        if ruleset.set_name:
            out.append(_egress(Action.ACCEPT, "allowlist", match_set=ruleset.set_name))
        else:
            out.extend(_egress(Action.ACCEPT, "allowlist", destination=net) for net in members)

        # (e) infrastructure
        out.extend(
            _egress(Action.ACCEPT, f"infra {r.reason}", destination=r.network)
            for r in infra.ranges
            if r.version == version
        )
        if version == 4 and infra.uses_docker_dns:
            docker_dns = ipaddress.ip_network(DOCKER_EMBEDDED_DNS)
            out.extend(
                _egress(
                    Action.ACCEPT,
                    "docker dns",
                    protocol=proto,
                    destination=docker_dns,
                    dport=DNS_PORT,
                )
                for proto in ("udp", "tcp")
            )

    # (f) default deny -- always last
    out.append(_terminal_rule(EGRESS_CHAIN, version, config.egress_action))

    ruleset.ingress = _compile_ingress(version, infra, config, enabled)
    return ruleset


def _compile_ingress(
    version: int,
    infra: Infrastructure,
    config: LockdownConfig,
    enabled: bool,
) -> list[FirewallRule]:
    if config.ingress == "accept":
        return [_ingress(Action.RETURN, "runtime isolation")]

    rules = [
        _ingress(Action.ACCEPT, "loopback", in_interface="lo"),
        _ingress(Action.ACCEPT, "established", states=ESTABLISHED),
    ]
    if enabled:
        rules.append(_ingress(Action.ACCEPT, "dns responses", protocol="udp", sport=DNS_PORT))
        rules.extend(
            _ingress(Action.ACCEPT, f"infra {r.reason}", source=r.network)
            for r in infra.ranges
            if r.version == version
        )
    rules.append(_ingress(Action.DROP, "default deny"))
    return rules


def compile_policy(
    allow_set: AllowSet,
    infrastructure: Infrastructure,
    config: LockdownConfig,
) -> FirewallPolicy:
    """Compile the complete replacement policy for both families."""
    policy = FirewallPolicy(
        ipv4=_compile_family(4, allow_set, infrastructure, config),
        ipv6=_compile_family(6, allow_set, infrastructure, config),
    )
    for ruleset in policy.rulesets():
        terminal = ruleset.terminal_egress()
        if terminal is None or not terminal.action.is_deny or not terminal.matches_everything:
            raise RuntimeError(f"IPv{ruleset.version} egress chain does not end in a deny")

    logger.info(
        "Compiled %d rules",
        policy.rule_count,
        extra=stage_extra(
            "compiler",
            ipv4=policy.ipv4.rule_count,
            ipv6=policy.ipv6.rule_count,
            set_members=len(policy.ipv4.set_members) + len(policy.ipv6.set_members),
        ),
    )
    return policy


def deny_all_ruleset(version: int) -> Ruleset:
    """The fallback installed when a commit fails partway."""
    return Ruleset(
        version=version,
        egress=[
            _egress(Action.ACCEPT, "loopback", out_interface="lo"),
            _egress(Action.DROP, "deny all"),
        ],
        ingress=[
            _ingress(Action.ACCEPT, "loopback", in_interface="lo"),
            _ingress(Action.DROP, "deny all"),
        ],
    )


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------


def evaluate(ruleset: Ruleset, packet: Packet) -> Action:
    """Return the verdict of the owned chain for ``packet``.

    ``RETURN`` means the packet leaves the owned chain and falls through
    to the built-in chain.
    """
    chain = ruleset.egress if packet.direction == "out" else ruleset.ingress
    members = frozenset(ruleset.set_members)
    for rule in chain:
        if rule.matches(packet, members):
            return rule.action
    return Action.RETURN


def last_matching_egress_rule(ruleset: Ruleset, packet: Packet) -> FirewallRule | None:
    """The last rule in the egress chain that would match ``packet``."""
    members = frozenset(ruleset.set_members)
    matched = [rule for rule in ruleset.egress if rule.matches(packet, members)]
    return matched[-1] if matched else None


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_ipset(ruleset: Ruleset) -> str:
    """``ipset restore`` input that atomically swaps in the new members."""
    if not ruleset.set_name:
        return ""
    family = "inet" if ruleset.version == 4 else "inet6"
    live = ruleset.set_name
    staging = f"{live}-new"
    maxelem = max(65536, 2 * len(ruleset.set_members))
    set_type = f"hash:net family {family} hashsize 1024 maxelem {maxelem}"
    lines = [
        f"create {staging} {set_type} -exist",
        f"flush {staging}",
    ]
    lines += [f"add {staging} {net}" for net in ruleset.set_members]
    lines += [
        f"create {live} {set_type} -exist",
        f"swap {staging} {live}",
        f"destroy {staging}",
    ]
    return "\n".join(lines) + "\n"


def render_iptables(ruleset: Ruleset, missing_hooks: tuple[str, ...] = tuple(HOOKS)) -> str:
    """``iptables-restore --noflush`` input for the owned chains.

    Declaring a user chain in restore input flushes it, so the commit
    replaces exactly the owned chains. ``missing_hooks`` lists the
    built-in chains that still need their jump inserted.
    """
    lines = ["*filter", f":{EGRESS_CHAIN} - [0:0]", f":{INGRESS_CHAIN} - [0:0]"]
    lines += [rule.render() for rule in ruleset.rules]
    for builtin in missing_hooks:
        lines.append(f"-I {builtin} 1 -j {HOOKS[builtin]}")
    lines.append("COMMIT")
    return "\n".join(lines) + "\n"


def render_plan(policy: FirewallPolicy) -> str:
    """Human-readable dump of everything the applier would commit."""
    sections = []
    for ruleset in policy.rulesets():
        sections.append(f"# ---- IPv{ruleset.version} ----")
        if ruleset.set_name:
            sections.append(f"# ipset restore ({len(ruleset.set_members)} members)")
            sections.append(render_ipset(ruleset).rstrip("\n"))
        tool = "iptables-restore" if ruleset.version == 4 else "ip6tables-restore"
        sections.append(f"# {tool} --noflush ({ruleset.rule_count} rules)")
        for rule in ruleset.rules:
            sections.append(f"{rule.render():<70} # {rule.comment}")
    return "\n".join(sections) + "\n"
