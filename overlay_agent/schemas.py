"""Coordination-store records and status API schemas.

Subnet and host-status values are stored as JSON objects whose field names
match the overlay control plane's own subnet leases exactly (``PublicIP``,
``BackendType``, ``BackendData.VtepMAC``), so records written here can be
read by flanneld and vice versa.
"""

from __future__ import annotations

import ipaddress
import json
import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from overlay_agent.errors import RecordError

# Subnet keys replace the CIDR slash with a dash: 10.5.8.0/24 -> 10.5.8.0-24
SUBNET_KEY_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+-\d+$")
MAC_RE = re.compile(r"^([0-9a-f]{2}:){5}[0-9a-f]{2}$")
_INVALID_MACS = {"", "null", "unknown", "none", "00:00:00:00:00:00"}


def subnet_to_key(cidr: str) -> str:
    return cidr.replace("/", "-")


def key_to_subnet(key: str) -> str:
    """Convert a subnet key (or full key path) back to CIDR notation.

    Raises:
        RecordError: if the key does not encode a valid IPv4 network.
    """
    leaf = key.rstrip("/").rsplit("/", 1)[-1]
    if not SUBNET_KEY_RE.match(leaf):
        raise RecordError(key, "not a subnet key")
    cidr = leaf.replace("-", "/")
    try:
        return str(ipaddress.IPv4Network(cidr, strict=False))
    except ValueError as e:
        raise RecordError(key, f"invalid CIDR {cidr}: {e}") from e


def is_valid_mac(mac: Optional[str]) -> bool:
    if mac is None:
        return False
    mac = mac.strip().lower()
    if mac in _INVALID_MACS:
        return False
    return bool(MAC_RE.match(mac))


def is_valid_ipv4(address: Optional[str]) -> bool:
    if not address:
        return False
    try:
        ipaddress.IPv4Address(address)
    except ValueError:
        return False
    return True


def synthetic_mac_from_ip(ip: str) -> str:
    """Last-resort endpoint MAC guess derived from an IPv4 address.

    Only used when a peer publishes no usable VtepMAC anywhere. This does
    not match how the kernel generates VXLAN device addresses, so entries
    built from it may simply never receive traffic.
    """
    octets = [int(o) for o in ipaddress.IPv4Address(ip).packed]
    return "02:" + ":".join(f"{o:02x}" for o in octets) + ":00"


class BackendData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    vni: int = Field(1, alias="VNI")
    vtep_mac: str = Field("", alias="VtepMAC")


class _FlannelLease(BaseModel):
    """Fields shared by subnet leases and host status records."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    public_ip: str = Field(alias="PublicIP")
    public_ipv6: Optional[str] = Field(None, alias="PublicIPv6")
    backend_type: str = Field("vxlan", alias="BackendType")
    backend_data: BackendData = Field(default_factory=BackendData, alias="BackendData")

    @property
    def vtep_mac(self) -> str:
        return self.backend_data.vtep_mac.lower()

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=False, exclude=self._local_fields()))

    def _local_fields(self) -> set[str]:
        return set()


class SubnetRecord(_FlannelLease):
    """One overlay subnet lease, keyed by CIDR under the subnets prefix."""

    cidr: str = Field("", exclude=True)
    hostname: Optional[str] = None

    def _local_fields(self) -> set[str]:
        return {"hostname"} if self.hostname is None else set()

    @classmethod
    def from_key(cls, key: str, raw: str) -> "SubnetRecord":
        """Parse a subnet record from its store key and JSON value.

        Raises:
            RecordError: on an invalid key, invalid JSON or missing fields.
        """
        cidr = key_to_subnet(key)
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise RecordError(key, f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise RecordError(key, "value is not an object")
        try:
            record = cls.model_validate(data)
        except ValidationError as e:
            raise RecordError(key, f"missing or invalid fields: {e.errors()[0]['loc']}") from e
        if not is_valid_ipv4(record.public_ip):
            raise RecordError(key, f"invalid PublicIP {record.public_ip!r}")
        record.cidr = cidr
        return record


class HostStatusRecord(_FlannelLease):
    """Host presence record refreshed periodically by its owner.

    Serialized in the lease format plus ``hostname``, ``boot_time`` and
    ``timestamp``. The older flat layout (``vtep_mac``, ``primary_ip``)
    is still accepted on read.
    """

    hostname: str = ""
    boot_time: float = 0
    timestamp: float = 0

    @property
    def primary_ip(self) -> str:
        return self.public_ip

    @classmethod
    def build(
        cls,
        hostname: str,
        vtep_mac: str,
        primary_ip: str,
        boot_time: float,
        timestamp: float,
        vni: int = 1,
    ) -> "HostStatusRecord":
        return cls(
            PublicIP=primary_ip,
            BackendData=BackendData(VNI=vni, VtepMAC=vtep_mac),
            hostname=hostname,
            boot_time=boot_time,
            timestamp=timestamp,
        )

    @classmethod
    def from_json(cls, key: str, raw: str) -> "HostStatusRecord":
        try:
            data: Any = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise RecordError(key, f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise RecordError(key, "value is not an object")

        if "PublicIP" not in data and "primary_ip" in data:
            data = {
                "PublicIP": data.get("primary_ip", ""),
                "BackendData": {"VNI": 1, "VtepMAC": data.get("vtep_mac", "")},
                "hostname": data.get("hostname", ""),
                "boot_time": data.get("boot_time", 0),
                "timestamp": data.get("timestamp", 0),
            }
        if not data.get("hostname"):
            data["hostname"] = key.rstrip("/").rsplit("/", 1)[-1]
        try:
            record = cls.model_validate(data)
        except ValidationError as e:
            raise RecordError(key, f"missing or invalid fields: {e.errors()[0]['loc']}") from e
        if not is_valid_ipv4(record.public_ip):
            raise RecordError(key, f"invalid PublicIP {record.public_ip!r}")
        return record


# --- Status API ---


class ComponentStatusOut(BaseModel):
    component: str
    status: str
    message: str = ""
    timestamp: float = 0


class TableCountsOut(BaseModel):
    added: int = 0
    updated: int = 0
    removed: int = 0
    errors: int = 0


class ReconcileResponse(BaseModel):
    skipped: bool = False
    source: str = "store"
    fdb: TableCountsOut = Field(default_factory=TableCountsOut)
    routes: TableCountsOut = Field(default_factory=TableCountsOut)
    firewall: TableCountsOut = Field(default_factory=TableCountsOut)
    error: Optional[str] = None


class StatusResponse(BaseModel):
    hostname: str
    system_status: str
    recovery_level: str
    components: list[ComponentStatusOut] = Field(default_factory=list)
    last_reconcile: Optional[ReconcileResponse] = None
