"""
Stable per-host machine identity.

The id is derived once from host characteristics, cached on disk and reused
for the lifetime of the installation, so history written from the same
machine always carries the same `machine_id`.
"""

import hashlib
import json
import logging
import os
import platform
import secrets
import socket
import time
import uuid
from pathlib import Path

from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from . import models, schemas

logger = logging.getLogger(__name__)

SYSTEM_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")


class MachineIdentity:
    """Resolves and registers the id of the machine this process runs on."""

    def __init__(self, cache_dir: str | os.PathLike | None = None):
        self.cache_dir = Path(cache_dir) if cache_dir else Path.home() / ".termhist"
        self.cache_file = self.cache_dir / "machine-id"

    def get_machine_id(self) -> str:
        """Return the cached id, generating and caching a new one if needed."""
        if self.cache_file.exists():
            cached = self.cache_file.read_text(encoding="utf-8").strip()
            if cached:
                return cached

        machine_id = self.generate_machine_id()
        self._save(machine_id)
        return machine_id

    def generate_machine_id(self) -> str:
        components = [socket.gethostname()]

        mac = uuid.getnode()
        # getnode() sets the multicast bit when it had to invent a random value
        if not (mac >> 40) & 0x01:
            components.append(f"{mac:012x}")

        system_id = self._system_machine_id()
        if system_id:
            components.append(system_id)
        else:
            components.append(f"{int(time.time() * 1000)}-{secrets.token_hex(4)}")

        components.append(f"{platform.system().lower()}-{platform.machine()}")
        machine_id = hashlib.sha256("-".join(components).encode()).hexdigest()
        logger.debug("Generated machine id %s", machine_id)
        return machine_id

    def _system_machine_id(self) -> str | None:
        for path in SYSTEM_ID_PATHS:
            try:
                value = Path(path).read_text(encoding="utf-8").strip()
            except OSError:
                continue
            if value:
                return value
        return None

    def _save(self, machine_id: str) -> None:
        try:
            self.cache_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            self.cache_file.write_text(machine_id, encoding="utf-8")
            self.cache_file.chmod(0o600)
        except OSError as exc:
            # The id is still usable for this process, it just gets regenerated next time
            logger.warning("Could not cache machine id in %s: %s", self.cache_file, exc)

    def invalidate_cache(self) -> bool:
        """Remove the cached id. Returns True if there was one."""
        if self.cache_file.exists():
            self.cache_file.unlink()
            return True
        return False

    def get_machine_info(self) -> schemas.MachineInfo:
        return schemas.MachineInfo(
            machine_id=self.get_machine_id(),
            hostname=socket.gethostname(),
            ip_address=local_ip_address(),
            os_info={
                "platform": platform.system().lower(),
                "release": platform.release(),
                "version": platform.version(),
                "arch": platform.machine(),
                "cpus": os.cpu_count(),
                "hostname": socket.gethostname(),
            },
        )

    async def register_machine(self, db: AsyncSession, now: int | None = None) -> str:
        """
        Upsert this machine's row and bump `last_seen`.

        `first_seen` and `total_commands` are kept for machines already known.
        """
        info = self.get_machine_info()
        now = now if now is not None else int(time.time())
        stmt = insert(models.Machine).values(
            machine_id=info.machine_id,
            hostname=info.hostname,
            ip_address=info.ip_address,
            os_info=json.dumps(info.os_info),
            first_seen=now,
            last_seen=now,
            total_commands=0,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[models.Machine.machine_id],
            set_={
                "last_seen": stmt.excluded.last_seen,
                "hostname": stmt.excluded.hostname,
                "ip_address": stmt.excluded.ip_address,
                "os_info": stmt.excluded.os_info,
            },
        )
        await db.execute(stmt)
        await db.commit()
        logger.debug("Registered machine %s (%s)", info.machine_id, info.hostname)
        return info.machine_id


def local_ip_address() -> str:
    """Best-effort IPv4 address of the outward-facing interface."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # UDP connect sends nothing, it only selects a route
        sock.connect(("192.0.2.1", 80))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()
