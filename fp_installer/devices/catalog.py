"""Supported device catalog — USB ids the driver and its fallbacks know about."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

XIAOMI_VENDOR_ID = "2717"
FPC_VENDOR_ID = "10a5"

_USB_ID_RE = re.compile(r"\bID\s+([0-9a-fA-F]{4}):([0-9a-fA-F]{4})\b")


@dataclass(frozen=True)
class DeviceInfo:
    vendor_id: str
    product_id: str
    name: str
    supported: bool = True

    @property
    def usb_id(self) -> str:
        return f"{self.vendor_id}:{self.product_id}"


_CATALOG: tuple[DeviceInfo, ...] = (
    DeviceInfo(XIAOMI_VENDOR_ID, "0368", "Xiaomi Fingerprint Scanner"),
    DeviceInfo(XIAOMI_VENDOR_ID, "0369", "Xiaomi Fingerprint Scanner"),
    DeviceInfo(XIAOMI_VENDOR_ID, "036a", "Xiaomi Fingerprint Scanner"),
    DeviceInfo(XIAOMI_VENDOR_ID, "036b", "Xiaomi Fingerprint Scanner"),
    DeviceInfo(FPC_VENDOR_ID, "9201", "FPC Fingerprint Reader"),
)

VENDOR_IDS = frozenset(d.vendor_id for d in _CATALOG)


def list_devices() -> list[DeviceInfo]:
    return list(_CATALOG)


def get_device(usb_id: str) -> Optional[DeviceInfo]:
    """Return the catalog entry for ``vvvv:pppp``, or None."""
    usb_id = usb_id.lower()
    for device in _CATALOG:
        if device.usb_id == usb_id:
            return device
    return None


def parse_usb_ids(lsusb_output: str) -> frozenset[str]:
    """Extract lowercase ``vvvv:pppp`` ids from ``lsusb`` output."""
    return frozenset(
        f"{vid.lower()}:{pid.lower()}"
        for vid, pid in _USB_ID_RE.findall(lsusb_output)
    )


def matching_ids(device_ids: Iterable[str]) -> list[str]:
    """Ids whose vendor belongs to a known fingerprint vendor."""
    return sorted(i for i in device_ids if i.split(":")[0] in VENDOR_IDS)


def matching_lines(lsusb_output: str) -> list[str]:
    """``lsusb`` lines for devices from a known fingerprint vendor."""
    lines = []
    for line in lsusb_output.splitlines():
        ids = parse_usb_ids(line)
        if matching_ids(ids):
            lines.append(line.strip())
    return lines


def udev_rules() -> str:
    """Default device-activation rules covering every catalog entry."""
    lines = ["# Xiaomi / FPC fingerprint scanners (generated by fp-installer)"]
    for device in _CATALOG:
        lines.append(
            f'SUBSYSTEM=="usb", ATTRS{{idVendor}}=="{device.vendor_id}", '
            f'ATTRS{{idProduct}}=="{device.product_id}", '
            'MODE="0664", GROUP="plugdev"'
        )
    lines.append('KERNEL=="fp_xiaomi*", MODE="0664", GROUP="plugdev"')
    return "\n".join(lines) + "\n"
