"""Node uniqueness checks.

Kubernetes requires every node to have a distinct product UUID and MAC
address. Cloned VMs and golden images often share them, so the identity is
computed and recorded during bootstrap and can be re-checked at any time.
"""

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger("kubenode.identity")

DEFAULT_UUID = "00000000-0000-0000-0000-000000000000"
NULL_MAC = "00:00:00:00:00:00"


@dataclass
class NodeIdentity:
    """Hardware identifiers of this node."""
    product_uuid: Optional[str]
    macs: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def first_mac(self) -> Optional[str]:
        for name in sorted(self.macs):
            return self.macs[name]
        return None

    @property
    def node_id(self) -> Optional[str]:
        """Deterministic id: first 16 hex chars of sha256("<uuid>-<mac>")."""
        if not self.product_uuid or not self.first_mac:
            return None
        digest = hashlib.sha256(f"{self.product_uuid}-{self.first_mac}".encode()).hexdigest()
        return digest[:16]

    @property
    def valid(self) -> bool:
        return not self.warnings

    def to_json(self) -> str:
        data = asdict(self)
        data['node_id'] = self.node_id
        return json.dumps(data, indent=2, sort_keys=True) + "\n"


def read_identity(root: Union[str, Path] = "/") -> NodeIdentity:
    """Collect the product UUID and interface MAC addresses.

    Args:
        root: Filesystem root to read ``sys/`` from (tests point this at a
            temporary directory)

    Returns:
        NodeIdentity: identifiers plus a warning for each problem found
    """
    root = Path(root)
    warnings = []

    uuid_path = root / "sys/class/dmi/id/product_uuid"
    product_uuid = None
    try:
        product_uuid = "".join(uuid_path.read_text().split()) or None
    except OSError:
        warnings.append("product_uuid file not found")
    else:
        if product_uuid is None or product_uuid == DEFAULT_UUID:
            warnings.append(f"Invalid or default product_uuid detected: {product_uuid or 'empty'}")

    macs = read_macs(root)
    if not macs:
        warnings.append("No MAC addresses found")

    identity = NodeIdentity(product_uuid=product_uuid, macs=macs, warnings=warnings)
    for warning in warnings:
        logger.warning(warning)
    return identity


def read_macs(root: Union[str, Path] = "/") -> Dict[str, str]:
    """MAC address of every interface except ``lo`` and null addresses, by name."""
    macs = {}
    net_dir = Path(root) / "sys/class/net"
    if not net_dir.is_dir():
        return macs
    for iface in sorted(net_dir.iterdir()):
        if iface.name == "lo":
            continue
        try:
            mac = iface.joinpath("address").read_text().strip().lower()
        except OSError:
            continue
        if mac and mac != NULL_MAC:
            macs[iface.name] = mac
    return macs


def primary_interface(macs: Dict[str, str]) -> Optional[str]:
    """First Ethernet-style interface (``e*``) by name, else the first one."""
    for name in sorted(macs):
        if name.startswith("e"):
            return name
    return min(macs) if macs else None
