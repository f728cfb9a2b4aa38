#!/usr/bin/env python3
"""
Platform helpers for privileged commands
========================================

Usage:
    from command_portal.platform_compat import (
        get_current_user, is_admin, needs_sudo_for, privileged_argv
    )
"""

import getpass
import os


# =============================================================================
# USER / PRIVILEGE CHECKS
# =============================================================================

def get_current_user():
    """Get current username"""
    return getpass.getuser()


def is_admin():
    """Check if running with root privileges"""
    return os.geteuid() == 0


def privileged_argv(argv):
    """
    Prefix argv with a non-interactive sudo when not already root.

    sudo -n fails instead of prompting, so a missing sudoers rule surfaces
    as a command failure rather than a hung request.
    """
    argv = list(argv)
    if is_admin():
        return argv
    return ['sudo', '-n'] + argv


def needs_sudo_for(owner):
    """True when signalling a process owned by `owner` needs elevation"""
    return bool(owner) and owner != get_current_user() and not is_admin()
