"""
VPS Panel - External command execution
Every OS utility the panel drives goes through a CommandRunner so that the
argument list, exit code and captured output are handled in one place.
"""

import logging
import re
import subprocess

logger = logging.getLogger('vps-panel.commands')

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127

_NAME_RE = re.compile(r'^[a-zA-Z0-9._-]+$')


class InvalidRequest(ValueError):
    """Rejected before any command was issued"""


def is_safe_name(name):
    """Validate that a name only contains safe characters (alphanumeric, dot, dash, underscore)"""
    return isinstance(name, str) and bool(_NAME_RE.match(name)) and not name.startswith('-')


class CommandError(Exception):
    """A command exited with a non-zero status"""

    def __init__(self, args, returncode, stdout='', stderr=''):
        self.cmd = list(args)
        self.returncode = returncode
        self.stdout = stdout or ''
        self.stderr = stderr or ''
        super().__init__(self.describe())

    def describe(self):
        text = self.stderr.strip() or self.stdout.strip()
        if text:
            return text
        return f"'{self.cmd[0] if self.cmd else '?'}' exited with code {self.returncode}"

    @property
    def details(self):
        return self.stderr.strip() or self.stdout.strip()


class CommandRunner:
    """Run commands as argument lists (no shell injection possible)"""

    # Commands that need root when the panel runs as an unprivileged user
    PRIVILEGED = {'virsh', 'virt-install', 'qemu-img', 'genisoimage', 'cp', 'mv', 'rm',
                  'mkdir', 'wget', 'systemctl', 'tar', 'mysqldump'}

    def __init__(self, timeout=60, long_timeout=3600, sudo=False):
        self.timeout = timeout
        self.long_timeout = long_timeout
        self.sudo = sudo

    def _argv(self, args):
        args = [str(a) for a in args]
        if self.sudo and args and args[0] in self.PRIVILEGED:
            return ['sudo', '-n'] + args
        return args

    def run(self, args, timeout=None, long=False):
        """Run a command and return a CompletedProcess, never raising"""
        argv = self._argv(args)
        if timeout is None:
            timeout = self.long_timeout if long else self.timeout
        logger.debug("exec: %s", ' '.join(argv))
        try:
            return subprocess.run(argv, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Command timed out after %ss: %s", timeout, ' '.join(argv))
            return subprocess.CompletedProcess(argv, TIMEOUT_EXIT_CODE, '', 'Command timed out')
        except FileNotFoundError:
            return subprocess.CompletedProcess(
                argv, NOT_FOUND_EXIT_CODE, '', f"{argv[0]}: command not found"
            )

    def check(self, args, timeout=None, long=False):
        """Run a command and raise CommandError on a non-zero exit status"""
        result = self.run(args, timeout=timeout, long=long)
        if result.returncode != 0:
            raise CommandError(args, result.returncode, result.stdout, result.stderr)
        return result
