"""Unit tests for the iproute2 / wg helpers."""

from __future__ import annotations

import pytest

from ringcompat.core.exceptions import ProvisioningFailure
from ringcompat.topology import netns
from ringcompat.topology.netns import (
    ensure_privileges,
    generate_wg_keypair,
    ip,
    list_netns,
    netns_exec_argv,
    tune_namespace,
)


class TestIpHelpers:
    """Tests for argv construction."""

    def test_ip_without_namespace(self, fake_runner) -> None:
        ip(fake_runner, "link", "add", "rc-br0", "type", "bridge")
        assert fake_runner.calls == [["ip", "link", "add", "rc-br0", "type", "bridge"]]

    def test_ip_in_namespace(self, fake_runner) -> None:
        ip(fake_runner, "link", "set", "lo", "up", ns="rc-n0")
        assert fake_runner.calls == [["ip", "-n", "rc-n0", "link", "set", "lo", "up"]]

    def test_netns_exec_argv(self) -> None:
        assert netns_exec_argv("rc-n1", "rita", "--config", "c.yaml") == [
            "ip", "netns", "exec", "rc-n1", "rita", "--config", "c.yaml",
        ]

    def test_tune_namespace_sets_forwarding(self, fake_runner) -> None:
        tune_namespace(fake_runner, "rc-n0")
        commands = fake_runner.commands()
        assert "ip netns exec rc-n0 sysctl -q -w net.ipv4.ip_forward=1" in commands
        assert "ip netns exec rc-n0 sysctl -q -w net.ipv6.conf.all.forwarding=1" in commands

    def test_list_netns_parses_ids(self, fake_runner) -> None:
        fake_runner.respond("ip", "netns", "list", stdout="rc-n1 (id: 1)\nrc-n0 (id: 0)\n\nlab\n")
        assert list_netns(fake_runner) == ["rc-n1", "rc-n0", "lab"]

    def test_list_netns_failure_is_empty(self, fake_runner) -> None:
        fake_runner.respond("ip", "netns", "list", returncode=1)
        assert list_netns(fake_runner) == []


class TestWireGuardKeys:
    """Tests for keypair generation."""

    def test_generates_pair(self, fake_runner) -> None:
        private, public = generate_wg_keypair(fake_runner)
        assert len(private) == len(public) == 44
        assert fake_runner.kwargs[1]["input_text"] == private + "\n"

    def test_malformed_key_rejected(self, fake_runner) -> None:
        fake_runner.respond("wg", "genkey", stdout="short\n")
        with pytest.raises(ProvisioningFailure, match="malformed"):
            generate_wg_keypair(fake_runner)


class TestEnsurePrivileges:
    """Tests for the root/tool preflight."""

    def test_requires_root(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(netns.os, "geteuid", lambda: 1000)
        with pytest.raises(ProvisioningFailure, match="root"):
            ensure_privileges()

    def test_reports_missing_tools(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(netns.os, "geteuid", lambda: 0)
        monkeypatch.setattr(netns.shutil, "which", lambda tool: None if tool == "wg" else f"/sbin/{tool}")
        with pytest.raises(ProvisioningFailure) as exc_info:
            ensure_privileges()
        assert exc_info.value.details["missing"] == "wg"

    def test_passes_with_root_and_tools(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(netns.os, "geteuid", lambda: 0)
        monkeypatch.setattr(netns.shutil, "which", lambda tool: f"/sbin/{tool}")
        ensure_privileges()
