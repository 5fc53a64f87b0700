# SPDX-License-Identifier: LGPL-3.0-or-later
import unittest
from pathlib import Path

import pytest

from liveswap.ssh.ssh_config import SSHConfig


@pytest.mark.unit
class TestSSHConfig(unittest.TestCase):
    """Test SSH configuration dataclass."""

    def test_default_config(self):
        config = SSHConfig(host="esxi01.lab")
        self.assertEqual(config.host, "esxi01.lab")
        self.assertEqual(config.user, "root")
        self.assertEqual(config.port, 22)
        self.assertIsNone(config.identity)
        self.assertIsNone(config.known_hosts)
        self.assertFalse(config.control_master)

    def test_host_and_user_are_stripped(self):
        config = SSHConfig(host="  esxi01.lab ", user=" admin ")
        self.assertEqual(config.target(), "admin@esxi01.lab")

    def test_empty_host_rejected(self):
        with self.assertRaises(ValueError):
            SSHConfig(host="   ")

    def test_empty_user_rejected(self):
        with self.assertRaises(ValueError):
            SSHConfig(host="esxi01.lab", user="")

    def test_invalid_port_rejected(self):
        for port in (0, -1, 70000):
            with self.assertRaises(ValueError):
                SSHConfig(host="esxi01.lab", port=port)

    def test_negative_timeouts_rejected(self):
        with self.assertRaises(ValueError):
            SSHConfig(host="esxi01.lab", connect_timeout=-1)
        with self.assertRaises(ValueError):
            SSHConfig(host="esxi01.lab", retries=-2)

    def test_identity_is_expanded(self):
        config = SSHConfig(host="esxi01.lab", identity="~/.ssh/id_esxi")
        self.assertIsInstance(config.identity, Path)
        self.assertNotIn("~", str(config.identity))

    def test_ssh_opts_cleaned_and_deduplicated(self):
        config = SSHConfig(
            host="esxi01.lab",
            ssh_opts=["Ciphers=aes128-ctr", "  Ciphers=aes128-ctr ", "LogLevel=ERROR\n", ""],
        )
        self.assertEqual(config.ssh_opts, ["Ciphers=aes128-ctr", "LogLevel=ERROR"])


@pytest.mark.unit
class TestSSHCommandRendering(unittest.TestCase):
    def test_ssh_base_cmd(self):
        cmd = SSHConfig(host="esxi01.lab", port=2222).ssh_base_cmd()
        self.assertEqual(cmd[:3], ["ssh", "-p", "2222"])
        self.assertEqual(cmd[-1], "root@esxi01.lab")
        self.assertIn("BatchMode=yes", cmd)
        self.assertIn("StrictHostKeyChecking=no", cmd)
        self.assertIn("UserKnownHostsFile=/dev/null", cmd)

    def test_known_hosts_turns_on_strict_checking(self):
        cmd = SSHConfig(host="esxi01.lab", known_hosts="/tmp/known_hosts").ssh_base_cmd()
        self.assertIn("StrictHostKeyChecking=yes", cmd)
        self.assertIn("UserKnownHostsFile=/tmp/known_hosts", cmd)
        self.assertNotIn("UserKnownHostsFile=/dev/null", cmd)

    def test_identity_flag(self):
        cmd = SSHConfig(host="esxi01.lab", identity="/keys/id_esxi").ssh_base_cmd()
        i = cmd.index("-i")
        self.assertEqual(cmd[i + 1], "/keys/id_esxi")

    def test_control_master_options(self):
        cmd = SSHConfig(host="esxi01.lab", control_master=True).ssh_base_cmd()
        self.assertIn("ControlMaster=auto", cmd)
        self.assertIn("ControlPersist=60s", cmd)
        self.assertIn("ControlPath=~/.ssh/cm-%C", cmd)

    def test_extra_opts_appended(self):
        cmd = SSHConfig(host="esxi01.lab", ssh_opts=["LogLevel=ERROR"]).ssh_base_cmd()
        i = cmd.index("LogLevel=ERROR")
        self.assertEqual(cmd[i - 1], "-o")

    def test_scp_uses_capital_port_flag(self):
        cmd = SSHConfig(host="esxi01.lab", port=2222).scp_base_cmd()
        self.assertEqual(cmd[:4], ["scp", "-P", "2222", "-p"])

    def test_ipv6_target_is_bracketed(self):
        config = SSHConfig(host="fe80::1")
        self.assertEqual(config.target(), "root@[fe80::1]")
        self.assertEqual(config.scp_src("/vmfs/volumes/ds1/a.vmdk"), "root@[fe80::1]:/vmfs/volumes/ds1/a.vmdk")

    def test_scp_shares_host_key_policy(self):
        cmd = SSHConfig(host="esxi01.lab", known_hosts="~/.ssh/esxi_known_hosts").scp_base_cmd()
        self.assertIn("StrictHostKeyChecking=yes", cmd)
        self.assertFalse(any("~" in a for a in cmd))

    def test_custom_control_path(self):
        cmd = SSHConfig(host="esxi01.lab", control_master=True, control_path="/run/liveswap/cm").ssh_base_cmd()
        self.assertIn("ControlPath=/run/liveswap/cm", cmd)
