"""Privilege backends: the OS capability that adds/removes group membership.

The lifecycle talks to :class:`PrivilegeBackend` only. Every implementation
re-checks the identity against :data:`IDENTITY_PATTERN` before touching the OS
and runs commands with an argv list (never a shell string).
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import List, Protocol, Sequence, Set, Tuple, runtime_checkable

from tempadmin.errors import BackendError
from tempadmin.settings import Settings

logger = logging.getLogger(__name__)

IDENTITY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def is_valid_identity(identity: object) -> bool:
    # A leading dash would be parsed as an option by the group tools
    return isinstance(identity, str) and bool(IDENTITY_PATTERN.fullmatch(identity)) and not identity.startswith("-")


def _require_identity(identity: str, operation: str) -> None:
    if not is_valid_identity(identity):
        raise BackendError("Refusing to run with an unsafe identity", operation, str(identity)[:64])


@runtime_checkable
class PrivilegeBackend(Protocol):
    """Grants and revokes elevated rights for an OS identity."""

    async def grant(self, identity: str) -> None:
        ...

    async def revoke(self, identity: str) -> None:
        ...

    async def is_elevated(self, identity: str) -> bool:
        ...


# ---------------------------------------------------------------------------
# In-memory backend (development / tests)
# ---------------------------------------------------------------------------


class InMemoryBackend:
    """Tracks elevated identities in a set. Never touches the OS."""

    def __init__(self) -> None:
        self.elevated: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []

    async def grant(self, identity: str) -> None:
        _require_identity(identity, "grant")
        self.calls.append(("grant", identity))
        self.elevated.add(identity)
        logger.debug(f"Granted in-memory elevation to {identity}")

    async def revoke(self, identity: str) -> None:
        _require_identity(identity, "revoke")
        self.calls.append(("revoke", identity))
        self.elevated.discard(identity)
        logger.debug(f"Revoked in-memory elevation for {identity}")

    async def is_elevated(self, identity: str) -> bool:
        _require_identity(identity, "is_elevated")
        return identity in self.elevated


# ---------------------------------------------------------------------------
# OS group-membership backends
# ---------------------------------------------------------------------------


class GroupMembershipBackend:
    """Base for backends that elevate by adding the identity to an admin group.

    Subclasses provide the argv for add/remove/check. ``grant`` and ``revoke``
    check membership first so repeating either one is harmless.
    """

    operation_timeout = 30.0

    def __init__(self, group: str = "admin", *, use_sudo: bool = False):
        if not is_valid_identity(group):
            raise ValueError(f"Invalid group name: {group!r}")
        self.group = group
        self.use_sudo = use_sudo

    def add_command(self, identity: str) -> List[str]:
        raise NotImplementedError

    def remove_command(self, identity: str) -> List[str]:
        raise NotImplementedError

    def check_command(self, identity: str) -> List[str]:
        raise NotImplementedError

    def parse_check(self, returncode: int, stdout: str) -> bool:
        raise NotImplementedError

    async def _run(self, argv: Sequence[str], operation: str, identity: str, *, privileged: bool) -> Tuple[int, str]:
        if privileged and self.use_sudo:
            # -n: fail instead of prompting; the service has no TTY
            argv = ["sudo", "-n", *argv]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            # Reap the child
            await proc.wait()
            raise BackendError(f"{argv[0]} timed out", operation, identity) from exc
        except OSError as exc:
            raise BackendError(f"Could not run {argv[0]}", operation, identity, {"error": str(exc)}) from exc

        out = stdout.decode(errors="replace").strip()
        err = stderr.decode(errors="replace").strip()
        if privileged and proc.returncode != 0:
            raise BackendError(
                f"{argv[0]} exited with code {proc.returncode}",
                operation,
                identity,
                {"stderr": err[:500]},
            )
        return proc.returncode or 0, out

    async def grant(self, identity: str) -> None:
        _require_identity(identity, "grant")
        if await self.is_elevated(identity):
            logger.info(f"{identity} already in group {self.group}; grant is a no-op")
            return
        await self._run(self.add_command(identity), "grant", identity, privileged=True)
        logger.info("backend.granted", extra={"extra": {"identity": identity, "group": self.group}})

    async def revoke(self, identity: str) -> None:
        _require_identity(identity, "revoke")
        if not await self.is_elevated(identity):
            logger.info(f"{identity} not in group {self.group}; revoke is a no-op")
            return
        await self._run(self.remove_command(identity), "revoke", identity, privileged=True)
        logger.info("backend.revoked", extra={"extra": {"identity": identity, "group": self.group}})

    async def is_elevated(self, identity: str) -> bool:
        _require_identity(identity, "is_elevated")
        returncode, stdout = await self._run(self.check_command(identity), "is_elevated", identity, privileged=False)
        return self.parse_check(returncode, stdout)


class DseditgroupBackend(GroupMembershipBackend):
    """macOS: manage the local ``admin`` group with ``dseditgroup``."""

    def add_command(self, identity: str) -> List[str]:
        return ["dseditgroup", "-o", "edit", "-a", identity, "-t", "user", self.group]

    def remove_command(self, identity: str) -> List[str]:
        return ["dseditgroup", "-o", "edit", "-d", identity, "-t", "user", self.group]

    def check_command(self, identity: str) -> List[str]:
        return ["dseditgroup", "-o", "checkmember", "-m", identity, self.group]

    def parse_check(self, returncode: int, stdout: str) -> bool:
        # "yes <user> is a member of <group>" with exit status 0
        return returncode == 0 and stdout.startswith("yes")


class GpasswdBackend(GroupMembershipBackend):
    """Linux: manage a sudo-capable group with ``gpasswd``."""

    def add_command(self, identity: str) -> List[str]:
        return ["gpasswd", "-a", identity, self.group]

    def remove_command(self, identity: str) -> List[str]:
        return ["gpasswd", "-d", identity, self.group]

    def check_command(self, identity: str) -> List[str]:
        return ["id", "-nG", identity]

    def parse_check(self, returncode: int, stdout: str) -> bool:
        return returncode == 0 and self.group in stdout.split()


def build_backend(settings: Settings) -> PrivilegeBackend:
    if settings.privilege_backend == "memory":
        return InMemoryBackend()
    if settings.privilege_backend == "dseditgroup":
        return DseditgroupBackend(settings.privilege_group, use_sudo=settings.privilege_use_sudo)
    if settings.privilege_backend == "gpasswd":
        return GpasswdBackend(settings.privilege_group, use_sudo=settings.privilege_use_sudo)
    raise ValueError(f"Unknown privilege backend: {settings.privilege_backend}")
