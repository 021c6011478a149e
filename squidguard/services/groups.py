from __future__ import annotations

import grp
import logging
import pwd
import subprocess
from subprocess import run
from typing import List, Optional, Protocol

from squidguard.services.errors import ConfigError
from squidguard.services.logutil import log_warning_throttled


logger = logging.getLogger(__name__)


class GroupOracle(Protocol):
    def is_member(self, user: str, group: str) -> bool: ...


class UnixGroupOracle:
    """Membership from the local passwd/group databases (including NSS backends)."""

    def is_member(self, user: str, group: str) -> bool:
        if not user:
            return False
        try:
            pw = pwd.getpwnam(user)
        except KeyError:
            log_warning_throttled(logger, f"unix.user.{user}", "Can not find user %s", user, interval_seconds=60.0)
            return False

        try:
            gr = grp.getgrnam(group)
        except KeyError:
            log_warning_throttled(logger, f"unix.group.{group}", "Can not find group %s", group, interval_seconds=60.0)
            return False

        if pw.pw_gid == gr.gr_gid:
            logger.debug("FOUND %s has primary group %s", user, group)
            return True

        logger.debug("Group %s contains: %s", group, " ".join(gr.gr_mem))
        for member in gr.gr_mem:
            try:
                uid = pwd.getpwnam(member).pw_uid
            except KeyError:
                logger.warning("Can not find uid corresponding to %s", member)
                continue
            # Compare by uid: aliases of the same account count as the user.
            if uid == pw.pw_uid:
                logger.debug("FOUND %s is in %s", user, group)
                return True
        return False


class WinbindGroupOracle:
    """Membership from a Windows domain, queried through the `wbinfo` tool."""

    def __init__(self, wbinfo: str = "wbinfo", *, timeout: float = 5.0):
        self.wbinfo = wbinfo
        self.timeout = timeout

    def _wbinfo(self, *args: str) -> Optional[List[str]]:
        try:
            p = run([self.wbinfo, *args], capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            log_warning_throttled(
                logger,
                "winbind.exec",
                "Can not run %s: %s",
                self.wbinfo,
                e,
                interval_seconds=60.0,
            )
            return None
        if p.returncode != 0:
            return None
        return [ln.strip() for ln in (p.stdout or "").splitlines() if ln.strip()]

    def _sid(self, name: str) -> Optional[str]:
        out = self._wbinfo("-n", name)
        if not out:
            return None
        # "S-1-5-21-... SID_USER (1)"
        return out[0].split()[0]

    def is_member(self, user: str, group: str) -> bool:
        if not user:
            return False

        user_sid = self._sid(user)
        if user_sid is None:
            logger.warning("Can not find user %s in winbind", user)
            return False
        logger.debug("Found user %s with SID %s", user, user_sid)

        group_sid = self._sid(group)
        if group_sid is None:
            logger.warning("Can not find group %s in winbind", group)
            return False
        logger.debug("Found group %s with SID %s", group, group_sid)

        group_sids = self._wbinfo("--user-domgroups", user_sid)
        if group_sids is None:
            logger.warning("Can not find the SIDs of the groups of %s - %s", user, user_sid)
            return False
        logger.debug("%s is in the following groups: %s", user, " ".join(group_sids))

        if group_sid in group_sids:
            logger.debug("   FOUND")
            return True
        return False


def make_group_oracle(kind: Optional[str]) -> Optional[GroupOracle]:
    k = (kind or "").strip().lower()
    if not k or k == "none":
        return None
    if k == "unix":
        return UnixGroupOracle()
    if k == "winbind":
        return WinbindGroupOracle()
    raise ConfigError(f"Unknown group backend {kind!r} (expected unix, winbind or none)")
