"""
Command Portal
==============
Self-hosted ops console for a development server: processes, ports,
packages, journald/cron/timers, SSH/fail2ban, a settings database browser,
an HTTP proxy, the Tabby completion container and a Jaeger/Loki stack.
"""

PORTAL_VERSION = "0.4.0"
__version__ = PORTAL_VERSION
