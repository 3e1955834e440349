"""
Orion Lockdown -- domain-allowlist egress firewall for sandbox containers.

Resolves a curated list of trusted hostnames, programs the kernel packet
filter so only those destinations (plus required infrastructure) are
reachable, and verifies the policy before the workload starts.
"""

__version__ = "1.0.0"
__author__ = "Orion Team"
