"""
Run the service reload command attached to a certificate binding.

Commands come from the server, so they are matched against a whitelist of
known reload forms and executed without a shell.  Anything containing shell
syntax or a blacklisted program is refused before the whitelist is consulted.
"""
from __future__ import annotations

import logging
import re
import shlex
import subprocess

from agent.errors import ReloadError

logger = logging.getLogger(__name__)

_FORBIDDEN_FRAGMENTS = [
    ";", "&&", "||", "|", "`", "$(", "${", ">", "<", "&", "\n", "\r",
    "rm ", "dd ", "mkfs", "wget ", "curl ", "chmod ", "chown ",
    "eval ", "exec ", "source ", "bash ", "sh ",
    "python", "perl", "ruby", "nc ", "ncat ",
]

_ALLOWED_COMMANDS = [
    re.compile(r"^systemctl\s+(reload|restart|start|stop)\s+[\w\-.@]+$"),
    re.compile(r"^service\s+[\w\-.]+\s+(reload|restart|start|stop)$"),
    re.compile(r"^nginx\s+-s\s+(reload|reopen|stop|quit)$"),
    re.compile(r"^nginx\s+-t$"),
    re.compile(r"^(apache2ctl|apachectl|httpd)\s+(graceful|restart|reload)$"),
    re.compile(r"^caddy\s+reload$"),
    re.compile(r"^kill\s+-HUP\s+\d+$"),
    re.compile(r"^pkill\s+-HUP\s+[\w\-]+$"),
    re.compile(r"^docker\s+restart\s+[\w\-.]+$"),
    re.compile(r"^docker-compose\s+restart(\s+[\w\-.]+)?$"),
]


def is_allowed(cmd: str) -> bool:
    cmd = cmd.strip()
    if not cmd:
        return True
    lowered = cmd.lower()
    if any(fragment in lowered for fragment in _FORBIDDEN_FRAGMENTS):
        return False
    return any(pattern.match(cmd) for pattern in _ALLOWED_COMMANDS)


class Reloader:
    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout

    def reload(self, cmd: str) -> None:
        """Execute *cmd*; an empty command is a no-op."""
        cmd = cmd.strip()
        if not cmd:
            return
        if not is_allowed(cmd):
            raise ReloadError(f"reload command rejected: {cmd}")

        try:
            result = subprocess.run(
                shlex.split(cmd),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise ReloadError(f"reload command timed out after {self.timeout:.0f}s: {cmd}") from None
        except OSError as exc:
            raise ReloadError(f"reload command could not be started: {cmd}: {exc}") from exc

        if result.returncode != 0:
            output = (result.stderr or result.stdout).strip()
            raise ReloadError(f"reload command exited {result.returncode}: {cmd}: {output}")
        logger.info("Reloaded: %s", cmd)
