#!/usr/bin/env python3
"""
VPS Panel - Command line tool

Usage:
    vps-panel --check          # Virtualization readiness report
    vps-panel --fix-network    # Create/start the default libvirt network
    vps-panel --vnc-ports      # VNC display and port of every VM
    vps-panel --vms            # VM overview
    vps-panel --serve          # Run the web panel
"""

import argparse
import logging
import socket
import sys

import diagnostics
from commands import CommandRunner, CommandError
from config import load_config
from hypervisor import VMManager


class Colors:
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    END = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'


def print_step(msg):
    print(f"\n{Colors.BLUE}{Colors.BOLD}==>{Colors.END} {msg}")


def print_success(msg):
    print(f"{Colors.GREEN}✓{Colors.END} {msg}")


def print_warning(msg):
    print(f"{Colors.YELLOW}⚠{Colors.END} {msg}")


def print_error(msg):
    print(f"{Colors.RED}✗{Colors.END} {msg}")


def print_info(msg):
    print(f"{Colors.CYAN}ℹ{Colors.END} {msg}")


def _build(config=None):
    config = config or load_config()
    runner = CommandRunner(
        timeout=config['commands']['timeout'],
        long_timeout=config['commands']['long_timeout'],
        sudo=config['hypervisor'].get('sudo', False),
    )
    return config, runner, VMManager(runner, config)


def _ok(flag, good, bad):
    if flag:
        print_success(good)
    else:
        print_error(bad)


# ============================================================================
# CHECK
# ============================================================================

def check(config, runner):
    """Print the readiness report; returns the number of issues"""
    report = diagnostics.probe(runner, config['hypervisor']['images_dir'],
                               network_name=config['hypervisor']['network']['name'])

    print_step("CPU")
    _ok(report['system']['cpuVirtualization'],
        "CPU virtualization support detected", "No CPU virtualization support detected")

    print_step("Tools")
    for key, installed in report['virtualization'].items():
        _ok(installed, f"{diagnostics.EXECUTABLES[key]} is installed",
            f"{diagnostics.EXECUTABLES[key]} not found")

    print_step("libvirt")
    _ok(report['services']['libvirtd'], "libvirtd service is running", "libvirtd service is not running")
    _ok(report['libvirt']['connection'],
        f"libvirt connection successful ({report['libvirt']['vmCount']} VMs)",
        "Cannot connect to libvirt")
    net = report['libvirt']['defaultNetwork']
    if net == 'active':
        print_success("Default network is active")
    elif net:
        print_warning(f"Default network status: {net}")
    else:
        print_error("Default network not found")

    print_step("Permissions")
    _ok(report['permissions']['libvirtDir'], "libvirt directory is writable",
        "libvirt directory is not writable by current user")
    _ok(report['permissions']['imagesDir'], "VM images directory is writable",
        "VM images directory is not writable by current user")

    print_step("Summary")
    issues = report['issues']
    if not issues:
        print_success("All checks passed! VM management should work properly.")
    else:
        print_warning(f"Found {len(issues)} issue(s) that need to be resolved:")
        for issue in issues:
            print(f"  {Colors.RED}●{Colors.END} {issue['problem']}")
            print(f"    {Colors.DIM}{issue['fix']}{Colors.END}")
    return len(issues)


# ============================================================================
# NETWORK
# ============================================================================

def fix_network(manager):
    print_step(f"Network '{manager.network_name}'")
    try:
        outcome = manager.ensure_default_network()
    except CommandError as e:
        print_error(f"Could not set up network: {e}")
        return 1
    messages = {
        'created': "Default network created and started",
        'started': "Default network started",
        'active': "Default network is active",
    }
    print_success(messages[outcome])
    return 0


# ============================================================================
# VNC / VMS
# ============================================================================

def _port_open(port, host='127.0.0.1', timeout=3):
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def vnc_ports(manager):
    print_step("VNC displays")
    try:
        names = manager.list_names()
    except CommandError as e:
        print_error(f"Cannot list VMs: {e}")
        return 1
    if not names:
        print_info("No VMs defined")
    for name in names:
        try:
            info = manager.console(name)
        except (CommandError, ValueError):
            print(f"  {Colors.DIM}○{Colors.END} {name:<24} no VNC display")
            continue
        listening = _port_open(info['vncPort'])
        color = Colors.GREEN if listening else Colors.RED
        state = 'listening' if listening else 'not listening'
        print(f"  {color}●{Colors.END} {name:<24} {info['vncDisplay']:<8} port {info['vncPort']} "
              f"{color}{state}{Colors.END}")
    return 0


def vms_overview(manager):
    print_step("Virtual machines")
    data = manager.list_vms()
    if data['virtualization'] == 'none':
        print_warning("KVM/QEMU not available")
        return 1
    print(f"\n{Colors.CYAN}{'─' * 60}{Colors.END}")
    for vm in data['vms']:
        color = Colors.GREEN if vm['state'] == 'running' else Colors.DIM
        memory = f"{vm['memory_mb']} MB" if vm['memory_mb'] else '?'
        print(f"  {color}●{Colors.END} {vm['name']:<24} {color}{vm['state']:<10}{Colors.END} "
              f"{memory:>9}  {vm['vcpus'] or '?'} vCPU")
    print(f"{Colors.CYAN}{'─' * 60}{Colors.END}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='VPS Panel - host and VM management',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--check', action='store_true', help='Virtualization readiness report')
    parser.add_argument('--fix-network', action='store_true', help='Create/start the default network')
    parser.add_argument('--vnc-ports', action='store_true', help='VNC display and port per VM')
    parser.add_argument('--vms', action='store_true', help='VM overview')
    parser.add_argument('--serve', action='store_true', help='Run the web panel')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log executed commands')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if args.serve:
        import app
        app.serve()
        return 0

    config, runner, manager = _build()
    if args.check:
        return 1 if check(config, runner) else 0
    if args.fix_network:
        return fix_network(manager)
    if args.vnc_ports:
        return vnc_ports(manager)
    if args.vms:
        return vms_overview(manager)
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
