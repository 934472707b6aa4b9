import hashlib
import json

import pytest

from kubenode.identity import read_identity

UUID = "4c4c4544-0042-3610-8051-b4c04f4d4e32"


@pytest.fixture
def sys_root(tmp_path):
    def build(product_uuid=UUID, macs=None):
        dmi = tmp_path / "sys/class/dmi/id"
        dmi.mkdir(parents=True)
        if product_uuid is not None:
            (dmi / "product_uuid").write_text(product_uuid + "\n")
        net = tmp_path / "sys/class/net"
        net.mkdir(parents=True)
        for iface, mac in (macs or {}).items():
            (net / iface).mkdir()
            (net / iface / "address").write_text(mac + "\n")
        return tmp_path
    return build


def test_valid_identity(sys_root):
    root = sys_root(macs={"lo": "00:00:00:00:00:00", "eth1": "52:54:00:AA:BB:02", "eth0": "52:54:00:aa:bb:01"})
    identity = read_identity(root)

    assert identity.valid
    assert identity.product_uuid == UUID
    assert identity.macs == {"eth0": "52:54:00:aa:bb:01", "eth1": "52:54:00:aa:bb:02"}
    assert identity.first_mac == "52:54:00:aa:bb:01"
    expected = hashlib.sha256(f"{UUID}-52:54:00:aa:bb:01".encode()).hexdigest()[:16]
    assert identity.node_id == expected


def test_node_id_is_deterministic(sys_root):
    root = sys_root(macs={"eth0": "52:54:00:aa:bb:01"})
    assert read_identity(root).node_id == read_identity(root).node_id


def test_default_uuid_is_flagged(sys_root):
    identity = read_identity(sys_root(product_uuid="00000000-0000-0000-0000-000000000000",
                                      macs={"eth0": "52:54:00:aa:bb:01"}))
    assert not identity.valid
    assert identity.warnings == [
        "Invalid or default product_uuid detected: 00000000-0000-0000-0000-000000000000"
    ]


def test_missing_uuid_and_macs(sys_root):
    identity = read_identity(sys_root(product_uuid=None, macs={"lo": "00:00:00:00:00:00"}))
    assert identity.warnings == ["product_uuid file not found", "No MAC addresses found"]
    assert identity.node_id is None


def test_to_json(sys_root):
    identity = read_identity(sys_root(macs={"eth0": "52:54:00:aa:bb:01"}))
    data = json.loads(identity.to_json())
    assert data["product_uuid"] == UUID
    assert data["node_id"] == identity.node_id
    assert data["macs"] == {"eth0": "52:54:00:aa:bb:01"}
