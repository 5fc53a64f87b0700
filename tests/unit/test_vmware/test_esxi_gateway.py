# SPDX-License-Identifier: LGPL-3.0-or-later
import subprocess
import unittest
from pathlib import Path

import pytest

from fakes.fake_logger import FakeLogger
from liveswap.core.exceptions import GatewayError, GatewayTimeout, UnsafePathError
from liveswap.ssh.ssh_client import SSHResult
from liveswap.vmware.esxi_gateway import ESXiGateway, is_safe_remote_path
from liveswap.vmware.gateway import POWERED_OFF, POWERED_ON, SnapshotSpec


def _res(rc=0, stdout="", stderr=""):
    return SSHResult(rc=rc, stdout=stdout, stderr=stderr, argv=[], seconds=0.0)


class ScriptedSSH:
    """SSHClient stand-in: answers commands by prefix, in rule order."""

    def __init__(self, rules=None):
        self.rules = list(rules or [])
        self.commands = []
        self.timeouts = []

    def on(self, prefix, answer):
        self.rules.append((prefix, answer))
        return self

    def run(self, cmd, *, capture=True, timeout=None, check=True):
        self.commands.append(cmd)
        self.timeouts.append(timeout)
        for prefix, answer in self.rules:
            if cmd.startswith(prefix):
                if callable(answer):
                    answer = answer(cmd)
                if isinstance(answer, BaseException):
                    raise answer
                return answer
        return _res()

    def read_text(self, remote, *, timeout=30):
        return self.run(f"cat {remote}").stdout

    def scp_from(self, remote, local, *, timeout=None):
        return self.run(f"scp {remote} {local}")


def _gw(ssh, **kw):
    kw.setdefault("poll_interval", 0.0)
    kw.setdefault("shutdown_timeout", 0)
    return ESXiGateway(FakeLogger(), ssh, **kw)


@pytest.mark.unit
@pytest.mark.security
class TestSafeRemotePath:
    @pytest.mark.parametrize(
        "path, ok",
        [
            ("/vmfs/volumes/ds1/web01/.liveswap-staging", True),
            ("/vmfs/volumes/ds1/web01", True),
            ("/vmfs/volumes/ds1", False),
            ("/vmfs/volumes", False),
            ("/vmfs/volumes/", False),
            ("/", False),
            ("", False),
            ("vmfs/volumes/ds1/web01", False),
            ("/vmfs/volumes/ds1/../../../etc", False),
            ("/vmfs/volumes/ds1/web01/../..", False),
            ("/vmfs/volumesX/ds1/web01", False),
            ("/etc/passwd", False),
        ],
    )
    def test_paths(self, path, ok):
        assert is_safe_remote_path(path) is ok

    def test_custom_prefix_and_depth(self):
        assert is_safe_remote_path("/scratch/a", "/scratch", min_depth=1)
        assert not is_safe_remote_path("/scratch/a", "/scratch")


@pytest.mark.unit
class TestFilesystemOps(unittest.TestCase):
    def test_remove_outside_datastore_refused(self):
        ssh = ScriptedSSH()
        with self.assertRaises(UnsafePathError):
            _gw(ssh).remove_path("/vmfs/volumes/ds1")
        self.assertEqual(ssh.commands, [])

    def test_make_dir_outside_datastore_refused(self):
        with self.assertRaises(UnsafePathError):
            _gw(ScriptedSSH()).make_dir("/tmp/staging")

    def test_remove_quotes_path(self):
        ssh = ScriptedSSH()
        self.assertTrue(_gw(ssh).remove_path("/vmfs/volumes/ds1/My VM/.liveswap-staging"))
        self.assertEqual(ssh.commands, ["rm -rf '/vmfs/volumes/ds1/My VM/.liveswap-staging'"])

    def test_clone_target_guarded(self):
        with self.assertRaises(UnsafePathError):
            _gw(ScriptedSSH()).clone_disk("/vmfs/volumes/ds1/web01/web01.vmdk", "/root/web01.vmdk")

    def test_clone_command(self):
        ssh = ScriptedSSH()
        gw = _gw(ssh, clone_timeout=3600)
        ok = gw.clone_disk("/vmfs/volumes/ds1/web01/web01.vmdk", "/vmfs/volumes/ds1/web01/.liveswap-staging/web01.vmdk")
        self.assertTrue(ok)
        self.assertEqual(
            ssh.commands[-1],
            "vmkfstools --clonevirtualdisk /vmfs/volumes/ds1/web01/web01.vmdk "
            "/vmfs/volumes/ds1/web01/.liveswap-staging/web01.vmdk -d thin",
        )
        self.assertEqual(ssh.timeouts[-1], 3600)

    def test_clone_failure_returns_false(self):
        ssh = ScriptedSSH().on("vmkfstools", _res(rc=1, stderr="Failed to clone disk: No space left on device"))
        self.assertFalse(_gw(ssh).clone_disk("/vmfs/volumes/ds1/a/a.vmdk", "/vmfs/volumes/ds1/a/s/a.vmdk"))

    def test_path_exists(self):
        ssh = ScriptedSSH().on("test -e", lambda cmd: _res(rc=0 if "there" in cmd else 1))
        gw = _gw(ssh)
        self.assertTrue(gw.path_exists("/vmfs/volumes/ds1/there"))
        self.assertFalse(gw.path_exists("/vmfs/volumes/ds1/gone"))

    def test_read_text_failure_maps_to_gateway_error(self):
        class FailingSSH(ScriptedSSH):
            def read_text(self, remote, *, timeout=30):
                raise subprocess.CalledProcessError(1, ["ssh"], stderr="cat: can't open")

        with self.assertRaises(GatewayError):
            _gw(FailingSSH()).read_text("/vmfs/volumes/ds1/web01/web01.vmdk")

    def test_timeout_maps_to_gateway_timeout(self):
        ssh = ScriptedSSH().on("vim-cmd", subprocess.TimeoutExpired(cmd="ssh", timeout=5))
        with self.assertRaises(GatewayTimeout) as cm:
            _gw(ssh).power_state("12")
        self.assertEqual(cm.exception.code, 31)

    def test_fetch_file_failure(self):
        ssh = ScriptedSSH().on("scp", _res(rc=1, stderr="scp: No such file"))
        gw = _gw(ssh)
        self.assertFalse(gw.fetch_file("/vmfs/volumes/ds1/web01/x.vmdk", Path("/tmp/x.vmdk")))
        self.assertTrue(gw.logger.messages("error"))

    def test_run_remote(self):
        ssh = ScriptedSSH().on("uname", _res(stdout="VMkernel\n"))
        out = _gw(ssh).run_remote("uname -s")
        self.assertTrue(out.success)
        self.assertEqual(out.stdout, "VMkernel\n")


@pytest.mark.unit
class TestVMOps(unittest.TestCase):
    GETALLVMS = (
        "Vmid   Name   File   Guest OS   Version   Annotation\n"
        "12     web01  [datastore1] web01/web01.vmx   centos8_64Guest   vmx-19\n"
        "13     db01   [datastore1] db01/db01.vmx     centos8_64Guest   vmx-19\n"
    )

    def test_find_vm_by_name_or_id(self):
        ssh = ScriptedSSH().on("vim-cmd vmsvc/getallvms", _res(stdout=self.GETALLVMS))
        gw = _gw(ssh)
        self.assertEqual(gw.find_vm("db01").vmid, "13")
        self.assertEqual(gw.find_vm("12").name, "web01")
        self.assertIsNone(gw.find_vm("mail01"))

    def test_list_vms_failure(self):
        ssh = ScriptedSSH().on("vim-cmd vmsvc/getallvms", _res(rc=1, stderr="hostd not running"))
        with self.assertRaises(GatewayError):
            _gw(ssh).list_vms()

    def test_power_state_is_last_line(self):
        ssh = ScriptedSSH().on("vim-cmd vmsvc/power.getstate", _res(stdout="Retrieved runtime info\nPowered on\n"))
        self.assertEqual(_gw(ssh).power_state("12"), POWERED_ON)

    def test_tools_running(self):
        running = "guest = (vim.vm.GuestInfo) {\n   toolsRunningStatus = \"guestToolsRunning\",\n}"
        stopped = "guest = (vim.vm.GuestInfo) {\n   toolsRunningStatus = \"guestToolsNotRunning\",\n}"
        self.assertTrue(_gw(ScriptedSSH().on("vim-cmd vmsvc/get.guest", _res(stdout=running))).tools_running("12"))
        self.assertFalse(_gw(ScriptedSSH().on("vim-cmd vmsvc/get.guest", _res(stdout=stopped))).tools_running("12"))
        self.assertFalse(_gw(ScriptedSSH().on("vim-cmd vmsvc/get.guest", _res(rc=1))).tools_running("12"))

    def test_create_snapshot_command(self):
        ssh = ScriptedSSH()
        spec = SnapshotSpec(name="VM Snapshot 3/7/2025, 4:05:09 PM", description="live", memory=True, quiesce=False)
        self.assertTrue(_gw(ssh).create_snapshot("12", spec))
        self.assertEqual(
            ssh.commands[-1],
            "vim-cmd vmsvc/snapshot.create 12 'VM Snapshot 3/7/2025, 4:05:09 PM' live 1 0",
        )

    def test_create_snapshot_quiesced(self):
        ssh = ScriptedSSH()
        _gw(ssh).create_snapshot("12", SnapshotSpec(name="s", quiesce=True))
        self.assertTrue(ssh.commands[-1].endswith(" s '' 0 1"))


@pytest.mark.unit
class TestShutdown(unittest.TestCase):
    def test_graceful_shutdown(self):
        state = {"power": POWERED_ON}

        def _shutdown(cmd):
            state["power"] = POWERED_OFF
            return _res()

        ssh = (
            ScriptedSSH()
            .on("vim-cmd vmsvc/power.shutdown", _shutdown)
            .on("vim-cmd vmsvc/power.getstate", lambda cmd: _res(stdout=state["power"]))
        )
        self.assertTrue(_gw(ssh).shutdown("12", graceful=True))
        self.assertFalse(any("power.off" in c for c in ssh.commands))

    def test_falls_back_to_power_off(self):
        state = {"power": POWERED_ON}

        def _off(cmd):
            state["power"] = POWERED_OFF
            return _res()

        ssh = (
            ScriptedSSH()
            .on("vim-cmd vmsvc/power.shutdown", _res())
            .on("vim-cmd vmsvc/power.off", _off)
            .on("vim-cmd vmsvc/power.getstate", lambda cmd: _res(stdout=state["power"]))
        )
        gw = _gw(ssh)
        self.assertTrue(gw.shutdown("12", graceful=True))
        self.assertIn("vim-cmd vmsvc/power.off 12", ssh.commands)
        self.assertTrue(gw.logger.messages("warning"))

    def test_hard_power_off_without_tools(self):
        state = {"power": POWERED_ON}

        def _off(cmd):
            state["power"] = POWERED_OFF
            return _res()

        ssh = (
            ScriptedSSH()
            .on("vim-cmd vmsvc/power.off", _off)
            .on("vim-cmd vmsvc/power.getstate", lambda cmd: _res(stdout=state["power"]))
        )
        self.assertTrue(_gw(ssh).shutdown("12", graceful=False))
        self.assertFalse(any("power.shutdown" in c for c in ssh.commands))

    def test_power_off_failure(self):
        ssh = (
            ScriptedSSH()
            .on("vim-cmd vmsvc/power.off", _res(rc=1, stderr="InvalidState"))
            .on("vim-cmd vmsvc/power.getstate", _res(stdout=POWERED_ON))
        )
        self.assertFalse(_gw(ssh).shutdown("12", graceful=False))

    def test_disable_autostart_command(self):
        ssh = ScriptedSSH()
        self.assertTrue(_gw(ssh).disable_autostart("12"))
        self.assertEqual(
            ssh.commands[-1],
            "vim-cmd hostsvc/autostartmanager/update_autostartentry 12 none 0 0 none 0 yes",
        )

    def test_disable_autostart_failure(self):
        ssh = ScriptedSSH().on("vim-cmd hostsvc/autostartmanager", _res(rc=1, stderr="NotFound"))
        gw = _gw(ssh)
        self.assertFalse(gw.disable_autostart("12"))
        self.assertTrue(any("NotFound" in m for m in gw.logger.messages("error")))
