#!/usr/bin/env python3
"""
Critical resource protection table
==================================
One place that decides which PIDs, process names, packages and services the
portal refuses to touch. Built from the [policy] config section and consulted
by the validators and every route that kills, removes or toggles something.
"""

from typing import Any, Dict, Iterable

from command_portal.errors import PolicyDeniedError


class ProtectionPolicy:

    def __init__(self, critical_pids: Iterable[int] = (1,),
                 critical_process_names: Iterable[str] = (),
                 critical_packages: Iterable[str] = (),
                 critical_services: Iterable[str] = ()):
        self.critical_pids = frozenset(int(p) for p in critical_pids)
        self.critical_process_names = frozenset(n.lower() for n in critical_process_names)
        self.critical_packages = tuple(p.lower() for p in critical_packages)
        self.critical_services = frozenset(s.lower() for s in critical_services)

    @classmethod
    def from_config(cls, config) -> 'ProtectionPolicy':
        return cls(
            critical_pids=config.get_list('policy', 'critical_pids'),
            critical_process_names=config.get_list('policy', 'critical_process_names'),
            critical_packages=config.get_list('policy', 'critical_packages'),
            critical_services=config.get_list('policy', 'critical_services'),
        )

    # =========================================================================
    # PREDICATES
    # =========================================================================

    def is_critical_pid(self, pid: int) -> bool:
        return int(pid) in self.critical_pids

    def is_critical_process(self, name: str) -> bool:
        return (name or '').strip().lower() in self.critical_process_names

    def is_critical_package(self, name: str) -> bool:
        """Prefix match: 'linux-image' protects every linux-image-* kernel"""
        lowered = (name or '').lower()
        return any(lowered.startswith(prefix) for prefix in self.critical_packages)

    def is_critical_service(self, unit: str) -> bool:
        lowered = (unit or '').lower()
        base = lowered.rsplit('.', 1)[0] if lowered.endswith(('.service', '.socket', '.timer')) else lowered
        return base in self.critical_services

    # =========================================================================
    # CHECKS (raise PolicyDeniedError)
    # =========================================================================

    def check_pid(self, pid: int) -> None:
        if self.is_critical_pid(pid):
            raise PolicyDeniedError(f'Cannot kill critical process: PID {pid}',
                                    reason='critical_process', pid=pid)

    def check_process_name(self, name: str) -> None:
        if self.is_critical_process(name):
            raise PolicyDeniedError(f'Cannot kill critical process: {name}',
                                    reason='critical_process', name=name)

    def check_package(self, name: str) -> None:
        if self.is_critical_package(name):
            raise PolicyDeniedError(f'Cannot remove critical system package: {name}',
                                    reason='critical_package', package=name)

    def check_service(self, unit: str) -> None:
        if self.is_critical_service(unit):
            raise PolicyDeniedError(f'Cannot modify critical service: {unit}',
                                    reason='critical_service', unit=unit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'criticalPids': sorted(self.critical_pids),
            'criticalProcessNames': sorted(self.critical_process_names),
            'criticalPackages': list(self.critical_packages),
            'criticalServices': sorted(self.critical_services),
        }
