"""Tunnel interface inspection and cleanup."""

import subprocess
from collections.abc import Iterable

import psutil
from pydantic import BaseModel, Field

from .common.logging import get_logger

logger = get_logger(__name__)

TUN_PREFIX = "tun"


class InterfaceInfo(BaseModel):
    """Status of one tunnel interface."""

    name: str
    status: str = Field(description="UP or DOWN")
    addrs: list[str] = Field(default_factory=list)


class InterfaceJanitor:
    """Finds and removes tunnel interfaces left behind by earlier configurations."""

    def __init__(self, prefix: str = TUN_PREFIX, ip_binary: str = "ip"):
        self.prefix = prefix
        self.ip_binary = ip_binary

    def list_interface_names(self) -> list[str]:
        """Names of host interfaces following the tunnel naming convention."""
        return sorted(
            name for name in psutil.net_if_stats() if name.startswith(self.prefix)
        )

    def cleanup_unused(self, allowed_names: Iterable[str]) -> list[str]:
        """Delete every tunnel interface not in ``allowed_names``.

        Deletion is best-effort: a failure is logged and the remaining
        interfaces are still processed.

        Returns:
            Names of the interfaces that were deleted
        """
        allowed = set(allowed_names)
        try:
            names = self.list_interface_names()
        except OSError as e:
            logger.warning("Failed to enumerate network interfaces", error=str(e))
            return []

        deleted = []
        for name in names:
            if name in allowed:
                continue
            logger.info("Cleaning up zombie interface", interface=name)
            if self.delete_interface(name):
                deleted.append(name)
        return deleted

    def delete_interface(self, name: str) -> bool:
        command = [self.ip_binary, "link", "delete", name]
        try:
            result = subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as e:
            logger.error("Failed to delete interface", interface=name, error=str(e))
            return False
        if result.returncode != 0:
            logger.error(
                "Failed to delete interface",
                interface=name,
                returncode=result.returncode,
                output=(result.stdout + result.stderr).strip(),
            )
            return False
        return True

    def list_tunnel_interfaces(self) -> list[InterfaceInfo]:
        """Report every point-to-point or tunnel-named interface."""
        stats = psutil.net_if_stats()
        addresses = psutil.net_if_addrs()

        infos = []
        for name, stat in sorted(stats.items()):
            flags = getattr(stat, "flags", "").split(",")
            if "pointopoint" not in flags and not name.startswith(self.prefix):
                continue
            addrs = [
                addr.address
                for addr in addresses.get(name, [])
                if addr.family != psutil.AF_LINK
            ]
            infos.append(
                InterfaceInfo(name=name, status="UP" if stat.isup else "DOWN", addrs=addrs)
            )
        return infos
