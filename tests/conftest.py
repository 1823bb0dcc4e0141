import os
import subprocess
import tempfile

import pytest

os.environ.setdefault('VPS_PANEL_DATA_DIR', tempfile.mkdtemp(prefix='vps-panel-test-'))
os.environ.setdefault('VPS_PANEL_USER', 'admin')
os.environ.setdefault('VPS_PANEL_PASS', 'secret')
os.environ.setdefault('VPS_PANEL_SECRET', 'test-secret')

from commands import CommandRunner  # noqa: E402
from config import get_default_config  # noqa: E402
from hypervisor import VMManager  # noqa: E402

NET_LIST_ACTIVE = """ Name      State    Autostart   Persistent
----------------------------------------------
 default   active   yes         yes
"""

NET_LIST_INACTIVE = """ Name      State      Autostart   Persistent
------------------------------------------------
 default   inactive   no          yes
"""

NET_LIST_EMPTY = """ Name   State   Autostart   Persistent
-----------------------------------------
"""


class FakeRunner(CommandRunner):
    """Records every command and answers from scripted responses"""

    def __init__(self, sudo=False):
        super().__init__(sudo=sudo)
        self.calls = []
        self._responses = []

    def on(self, *prefix, stdout='', stderr='', returncode=0, hook=None):
        self._responses.append((tuple(prefix), returncode, stdout, stderr, hook))
        return self

    def _match(self, argv):
        best = None
        for response in self._responses:
            prefix = response[0]
            if tuple(argv[:len(prefix)]) == prefix:
                if best is None or len(prefix) >= len(best[0]):
                    best = response
        return best

    def run(self, args, timeout=None, long=False):
        argv = self._argv(args)
        self.calls.append(argv)
        response = self._match(argv)
        if response is None:
            return subprocess.CompletedProcess(argv, 0, '', '')
        _, returncode, stdout, stderr, hook = response
        if hook is not None:
            hook(argv)
        return subprocess.CompletedProcess(argv, returncode, stdout, stderr)

    def commands(self, *prefix):
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]

    def index(self, *prefix):
        for i, c in enumerate(self.calls):
            if tuple(c[:len(prefix)]) == prefix:
                return i
        return -1


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def config(tmp_path):
    cfg = get_default_config()
    cfg['hypervisor']['images_dir'] = str(tmp_path / 'images')
    (tmp_path / 'images').mkdir()
    return cfg


@pytest.fixture
def manager(runner, config):
    return VMManager(runner, config)


@pytest.fixture
def cloud_image(config):
    """Pretend the base cloud image was downloaded before"""
    path = os.path.join(config['hypervisor']['images_dir'],
                        config['hypervisor']['cloud_images_subdir'],
                        config['hypervisor']['cloud_image_name'])
    os.makedirs(os.path.dirname(path))
    with open(path, 'wb') as f:
        f.write(b'qcow')
    return path
