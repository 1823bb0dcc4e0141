"""
VPS Panel - Virtualization readiness checks
"""

import os
import re
import shutil
import sys
from datetime import datetime, timezone

REQUIRED_TOOLS = {
    'virsh': 'libvirt-clients',
    'virtInstall': 'virtinst',
    'qemuImg': 'qemu-utils',
    'qemuSystem': 'qemu-kvm',
    'genisoimage': 'genisoimage',
    'wget': 'wget',
}

EXECUTABLES = {
    'virsh': 'virsh',
    'virtInstall': 'virt-install',
    'qemuImg': 'qemu-img',
    'qemuSystem': 'qemu-system-x86_64',
    'genisoimage': 'genisoimage',
    'wget': 'wget',
}

CPUINFO_PATH = '/proc/cpuinfo'


def cpu_virtualization_flags(path=CPUINFO_PATH):
    """Number of CPU flag lines advertising VT-x (vmx) or AMD-V (svm)"""
    try:
        with open(path, 'r') as f:
            return len(re.findall(r'\b(?:vmx|svm)\b', f.read()))
    except OSError:
        return 0


def probe(runner, images_dir, network_name='default', which=shutil.which,
          cpuinfo_path=CPUINFO_PATH):
    """Collect everything needed to tell whether VM creation can work"""
    libvirt_dir = os.path.dirname(os.path.normpath(images_dir))
    tools = {key: which(exe) is not None for key, exe in EXECUTABLES.items()}

    report = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'system': {
            'platform': sys.platform,
            'python': sys.version.split()[0],
            'cpuVirtualization': cpu_virtualization_flags(cpuinfo_path) > 0,
        },
        'virtualization': tools,
        'permissions': {
            'libvirtDir': os.access(libvirt_dir, os.W_OK),
            'imagesDir': os.access(images_dir, os.W_OK),
        },
        'services': {
            'libvirtd': runner.run(['systemctl', 'is-active', '--quiet', 'libvirtd']).returncode == 0,
        },
        'libvirt': {
            'connection': False,
            'vmCount': 0,
            'defaultNetwork': None,
        },
    }

    if tools['virsh']:
        result = runner.run(['virsh', 'list', '--all', '--name'])
        if result.returncode == 0:
            report['libvirt']['connection'] = True
            report['libvirt']['vmCount'] = len([l for l in result.stdout.splitlines() if l.strip()])
        nets = runner.run(['virsh', 'net-list', '--all'])
        if nets.returncode == 0:
            for line in nets.stdout.splitlines():
                parts = line.split()
                if len(parts) >= 2 and parts[0] == network_name:
                    report['libvirt']['defaultNetwork'] = parts[1]
                    break

    report['issues'] = list_issues(report)
    return report


def list_issues(report):
    """Human-readable problems with a suggested fix each"""
    issues = []
    if not report['system']['cpuVirtualization']:
        issues.append({'problem': 'CPU virtualization support missing',
                       'fix': 'Enable VT-x/AMD-V in the firmware or use a host with nested virtualization'})
    for key, installed in report['virtualization'].items():
        if not installed:
            issues.append({'problem': f"{EXECUTABLES[key]} not installed",
                           'fix': f"sudo apt install {REQUIRED_TOOLS[key]}"})
    if not report['services']['libvirtd']:
        issues.append({'problem': 'libvirtd service not running',
                       'fix': 'sudo systemctl enable --now libvirtd'})
    if report['virtualization'].get('virsh') and not report['libvirt']['connection']:
        issues.append({'problem': 'Cannot connect to libvirt',
                       'fix': 'sudo usermod -a -G libvirt $USER, then log in again'})
    if report['libvirt']['connection'] and report['libvirt']['defaultNetwork'] is None:
        issues.append({'problem': 'Default network not found',
                       'fix': 'vps-panel --fix-network'})
    elif report['libvirt']['defaultNetwork'] not in (None, 'active'):
        issues.append({'problem': 'Default network is not active',
                       'fix': 'vps-panel --fix-network'})
    if not report['permissions']['imagesDir']:
        issues.append({'problem': 'VM images directory is not writable',
                       'fix': 'Run the panel as root or enable hypervisor.sudo in config.json'})
    return issues
