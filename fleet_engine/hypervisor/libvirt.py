# fleet_engine/hypervisor/libvirt.py
"""libvirt/KVM toolstack wrapper (qemu-img, genisoimage, virt-install, virsh)."""

import logging
import re
import shlex
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from fleet_engine.core.errors import HypervisorError

logger = logging.getLogger(__name__)

_IPV4_CIDR = re.compile(r"\b(\d{1,3}(?:\.\d{1,3}){3})/\d+")


class LibvirtHypervisor:
    """
    Thin, idempotence-friendly wrapper around the libvirt command line.

    Only lifecycle commands the provisioner needs are exposed; each one
    maps to a single CLI invocation with a timeout.
    """

    def __init__(
        self,
        images_dir: Path,
        *,
        network: str = "default",
        os_variant: str = "ubuntu22.04",
        use_sudo: bool = True,
        timeout: int = 300,
    ):
        self.images_dir = Path(images_dir)
        self.network = network
        self.os_variant = os_variant
        self.use_sudo = use_sudo
        self.timeout = timeout

    # ============================================
    # DISKS
    # ============================================

    def disk_path(self, name: str) -> Path:
        return self.images_dir / f"{name}.qcow2"

    def seed_path(self, name: str) -> Path:
        return self.images_dir / f"{name}-cloud-init.iso"

    def disk_exists(self, name: str) -> bool:
        return self.disk_path(name).exists()

    def create_disk(self, name: str, base_image: Path, disk_gb: int) -> Path:
        """Copy-on-write qcow2 overlay backed by base_image."""
        disk = self.disk_path(name)
        self._run([
            "qemu-img", "create", "-f", "qcow2", "-F", "qcow2",
            "-b", str(base_image), str(disk), f"{disk_gb}G",
        ])
        return disk

    def resize_disk(self, name: str, disk_gb: int) -> None:
        # Shrinking fails; growing an existing overlay is the only case that matters.
        self._run(["qemu-img", "resize", str(self.disk_path(name)), f"{disk_gb}G"], check=False)

    def build_seed_iso(self, name: str, user_data: Path, meta_data: Path) -> Path:
        """NoCloud seed: files must be named user-data and meta-data inside the ISO."""
        iso = self.seed_path(name)
        self._run([
            "genisoimage", "-output", str(iso), "-volid", "cidata", "-joliet", "-rock",
            "-graft-points", f"user-data={user_data}", f"meta-data={meta_data}",
        ])
        return iso

    def import_image(self, src: Path, dest: Path) -> None:
        """Move a downloaded image into the (root-owned) images directory."""
        partial = dest.with_name(dest.name + ".part")
        self._run(["mkdir", "-p", str(dest.parent)])
        self._run(["mv", "-f", str(src), str(partial)])
        self._run(["mv", "-f", str(partial), str(dest)])

    def delete_disks(self, name: str) -> None:
        for path in (self.disk_path(name), self.seed_path(name)):
            self._run(["rm", "-f", str(path)])

    # ============================================
    # DOMAINS
    # ============================================

    def domain_state(self, name: str) -> Optional[str]:
        """'running', 'shut off', ... or None if undefined."""
        result = self._run(["virsh", "domstate", name], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def install(
        self,
        name: str,
        cpus: int,
        memory_mb: int,
        disk: Path,
        seed_iso: Path,
    ) -> None:
        """Define and boot a VM from an existing disk (virt-install --import)."""
        self._run([
            "virt-install",
            "--name", name,
            "--memory", str(memory_mb),
            "--vcpus", str(cpus),
            "--disk", f"{disk},format=qcow2",
            "--disk", f"{seed_iso},device=cdrom",
            "--os-variant", self.os_variant,
            "--network", f"network={self.network}",
            "--graphics", "none",
            "--console", "pty,target_type=serial",
            "--noautoconsole",
            "--import",
        ])

    def start(self, name: str) -> None:
        self._run(["virsh", "start", name])

    def destroy(self, name: str) -> None:
        self._run(["virsh", "destroy", name], check=False)

    def undefine(self, name: str) -> None:
        self._run(["virsh", "undefine", name])

    def lease_address(self, name: str) -> Optional[str]:
        """First IPv4 address libvirt reports for the domain, if any."""
        result = self._run(["virsh", "domifaddr", name], check=False)
        if result.returncode != 0:
            return None
        return parse_domifaddr(result.stdout)

    # ============================================
    # PROCESS
    # ============================================

    def _run(self, args: Sequence[str], check: bool = True) -> subprocess.CompletedProcess:
        argv = (["sudo"] if self.use_sudo else []) + list(args)
        logger.debug("Run: %s", shlex.join(argv))
        try:
            result = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise HypervisorError(f"{args[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise HypervisorError(f"{argv[0]} not installed") from e

        if check and result.returncode != 0:
            raise HypervisorError(
                f"{shlex.join(args)} exited {result.returncode}: {result.stderr.strip()}",
                returncode=result.returncode,
                output=result.stderr,
            )
        return result


def parse_domifaddr(output: str) -> Optional[str]:
    """
    Extract the first IPv4 address from `virsh domifaddr` output::

         Name       MAC address          Protocol     Address
        -------------------------------------------------------
         vnet0      52:54:00:aa:bb:cc    ipv4         192.168.122.45/24
    """
    for line in output.splitlines():
        if "ipv4" not in line:
            continue
        match = _IPV4_CIDR.search(line)
        if match:
            return match.group(1)
    return None
