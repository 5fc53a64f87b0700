# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the VMware key/value descriptor parser."""
from __future__ import annotations

import pytest

from liveswap.vmware.descriptor import (
    active_disks,
    as_list,
    default_delta_file,
    extents,
    is_data_sidecar,
    parent_of,
    parse_descriptor,
    parse_descriptor_file,
)

VMX = """\
.encoding = "UTF-8"
config.version = "8"
displayName = "web01"
// legacy comment style
# scsi0:9.fileName = "commented-out.vmdk"
scsi0:0.fileName = "web01-000001.vmdk"
scsi0:1.fileName = "data-000001.vmdk"
sata0:0.fileName = "web01-000001.vmdk"
ide1:0.deviceType = "cdrom-image"
ide1:0.fileName = "cdrom.iso"
ide0:0.fileName = "legacy.vmdk"
ethernet0.networkName = "VM Network"
"""

REDO = """\
# Disk DescriptorFile
version=1
CID=fffffffe
parentCID=ffffffff
createType="seSparse"
parentFileNameHint="web01.vmdk"

# Extent description
RW 41943040 SESPARSE "web01-000001-sesparse.vmdk"

ddb.adapterType = "lsilogic"
"""


@pytest.mark.unit
class TestParseDescriptor:
    def test_basic_pairs(self):
        d = parse_descriptor(VMX)
        assert d["displayName"] == "web01"
        assert d["ethernet0.networkName"] == "VM Network"

    def test_whitespace_around_equals_is_optional(self):
        d = parse_descriptor('a="1"\nb = "2"\nc    =    "3"')
        assert dict(d) == {"a": "1", "b": "2", "c": "3"}

    def test_comments_and_blank_lines_ignored(self):
        d = parse_descriptor(VMX)
        assert "scsi0:9.fileName" not in d
        assert not any(k.startswith("//") for k in d)

    def test_unquoted_and_extent_lines_skipped(self):
        d = parse_descriptor(REDO)
        assert "version" not in d
        assert "CID" not in d
        assert d["createType"] == "seSparse"
        assert d["parentFileNameHint"] == "web01.vmdk"

    def test_repeated_key_becomes_sequence(self):
        d = parse_descriptor('k = "a"\nk = "b"\nk = "c"\nother = "x"')
        assert d["k"] == ("a", "b", "c")
        assert d["other"] == "x"

    def test_value_is_text_between_first_quotes(self):
        d = parse_descriptor('note = "first" trailing "second"')
        assert d["note"] == "first"

    def test_empty_value(self):
        assert parse_descriptor('parentFileNameHint = ""')["parentFileNameHint"] == ""

    def test_idempotent(self):
        assert parse_descriptor(VMX) == parse_descriptor(VMX)
        assert parse_descriptor(REDO) == parse_descriptor(REDO)

    def test_result_is_read_only(self):
        d = parse_descriptor(VMX)
        with pytest.raises(TypeError):
            d["displayName"] = "x"

    def test_garbage_never_raises(self):
        assert dict(parse_descriptor("\x00\x01 = = \"\n===\n\"unterminated")) == {}
        assert dict(parse_descriptor("")) == {}

    def test_parse_file(self, tmp_path):
        p = tmp_path / "web01.vmx"
        p.write_bytes(VMX.encode("utf-8") + b'bad = "\xff"\n')
        d = parse_descriptor_file(p)
        assert d["displayName"] == "web01"
        assert "bad" in d


@pytest.mark.unit
class TestHelpers:
    def test_active_disks_dedup_in_first_appearance_order(self):
        assert active_disks(parse_descriptor(VMX)) == ["web01-000001.vmdk", "data-000001.vmdk", "legacy.vmdk"]

    def test_active_disks_ignore_other_keys(self):
        d = parse_descriptor('scsi0:0.present = "TRUE"\nnvram = "web01.nvram"')
        assert active_disks(d) == []

    def test_parent_of(self):
        assert parent_of(parse_descriptor(REDO)) == "web01.vmdk"
        assert parent_of(parse_descriptor('createType="vmfs"')) is None
        assert parent_of(parse_descriptor('parentFileNameHint=""')) is None

    def test_as_list(self):
        assert as_list(None) == []
        assert as_list("a") == ["a"]
        assert as_list(("a", "b")) == ["a", "b"]

    def test_extents(self):
        ex = extents(REDO)
        assert len(ex) == 1
        assert ex[0].kind == "SESPARSE"
        assert ex[0].filename == "web01-000001-sesparse.vmdk"
        assert ex[0].size_bytes == 41943040 * 512

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("web01-flat.vmdk", True),
            ("web01-000001-sesparse.vmdk", True),
            ("web01-000001-delta.vmdk", True),
            ("web01-ctk.vmdk", True),
            ("web01.vmdk", False),
            ("web01-000001.vmdk", False),
        ],
    )
    def test_is_data_sidecar(self, name, expected):
        assert is_data_sidecar(name) is expected

    def test_default_delta_file(self):
        assert default_delta_file("web01-000001.vmdk") == "web01-000001-sesparse.vmdk"
