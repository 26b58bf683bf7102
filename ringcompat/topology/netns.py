"""Thin wrappers over iproute2, iptables, sysctl and wg.

Every helper takes the ``CommandRunner`` so tests can substitute a fake
and assert on the exact argv sequence.
"""

from __future__ import annotations

import logging
import os
import shutil

from ..core.commands import CommandResult, CommandRunner
from ..core.exceptions import ProvisioningFailure

logger = logging.getLogger(__name__)

REQUIRED_TOOLS: tuple[str, ...] = ("ip", "iptables", "ip6tables", "wg")
WG_KEY_LENGTH = 44


def ensure_privileges(tools: tuple[str, ...] = REQUIRED_TOOLS) -> None:
    """Check for root and the external tools provisioning needs.

    Raises:
        ProvisioningFailure: If not root or a tool is missing.

    """
    if os.geteuid() != 0:
        raise ProvisioningFailure("Provisioning network namespaces requires root")
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise ProvisioningFailure(
            "Missing required tools",
            details={"missing": ", ".join(missing)},
        )


def ip(
    runner: CommandRunner,
    *args: str,
    ns: str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> CommandResult:
    """Run ``ip [-n ns] args``."""
    argv = ["ip"]
    if ns is not None:
        argv += ["-n", ns]
    argv += list(args)
    return runner.run(argv, check=check, timeout=timeout)


def netns_exec_argv(ns: str, *args: str) -> list[str]:
    """Return the argv running *args* inside namespace *ns*."""
    return ["ip", "netns", "exec", ns, *args]


def netns_exec(
    runner: CommandRunner,
    ns: str,
    *args: str,
    check: bool = True,
    timeout: float | None = None,
) -> CommandResult:
    """Run a command inside namespace *ns*."""
    return runner.run(netns_exec_argv(ns, *args), check=check, timeout=timeout)


def set_sysctl(runner: CommandRunner, ns: str, key: str, value: str) -> None:
    """Set a sysctl inside namespace *ns*."""
    key = key.strip()
    value = value.strip()
    if not key or not value:
        raise ValueError("sysctl key/value must be non-empty")
    netns_exec(runner, ns, "sysctl", "-q", "-w", f"{key}={value}")


def tune_namespace(runner: CommandRunner, ns: str) -> None:
    """Enable forwarding and relax reverse-path filtering inside *ns*."""
    # Multi-hop reachability across the ring needs forwarding.
    set_sysctl(runner, ns, "net.ipv4.ip_forward", "1")
    set_sysctl(runner, ns, "net.ipv6.conf.all.forwarding", "1")
    set_sysctl(runner, ns, "net.ipv4.conf.all.rp_filter", "0")
    set_sysctl(runner, ns, "net.ipv4.conf.default.rp_filter", "0")


def list_netns(runner: CommandRunner) -> list[str]:
    """Return the names of existing network namespaces."""
    res = runner.run(["ip", "netns", "list"], check=False)
    if not res.ok:
        return []
    names = []
    for line in res.stdout.strip().splitlines():
        if line.strip():
            names.append(line.split()[0])
    return names


def generate_wg_keypair(runner: CommandRunner) -> tuple[str, str]:
    """Generate a WireGuard ``(private, public)`` keypair with ``wg``."""
    private = runner.run(["wg", "genkey"]).stdout.strip()[:WG_KEY_LENGTH]
    public = runner.run(["wg", "pubkey"], input_text=private + "\n").stdout.strip()[:WG_KEY_LENGTH]
    if len(private) != WG_KEY_LENGTH or len(public) != WG_KEY_LENGTH:
        raise ProvisioningFailure(
            "wg produced a malformed keypair",
            details={"private_len": len(private), "public_len": len(public)},
        )
    return private, public
