"""
HOMESERVER Panel Migration Tool
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
Post-restore health check.

Purely observational: reports service state, web root presence, listening
ports and an HTTP check. Nothing here changes the outcome of a restore.
"""

import os
import re
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests

from panelmigrate.utils.index import log_message

RUNTIME_DIGITS = re.compile(r'(\d+)')


@dataclass
class ServiceStatus:
    name: str
    active: bool
    state: str


@dataclass
class HealthReport:
    services: List[ServiceStatus] = field(default_factory=list)
    web_root_present: bool = False
    ports: Dict[int, bool] = field(default_factory=dict)
    http_status: Optional[int] = None
    http_error: str = ""

    @property
    def healthy(self) -> bool:
        return self.web_root_present and all(s.active for s in self.services)


def fpm_service_name(template: str, runtime_version: str) -> str:
    match = RUNTIME_DIGITS.search(runtime_version)
    return template.format(digits=match.group(1) if match else runtime_version)


def destination_path(config, path: str) -> str:
    """Where an absolute recorded path lands under the configured restore root."""
    return os.path.join(config.restore_root, path.lstrip("/"))


def service_status(name: str, run: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> ServiceStatus:
    try:
        result = run(["systemctl", "is-active", name], capture_output=True, text=True)
    except OSError as e:
        return ServiceStatus(name, False, f"unknown ({e})")
    state = result.stdout.strip() or "unknown"
    return ServiceStatus(name, state == "active", state)


def check_ports(ports: Iterable[int], run: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> Dict[int, bool]:
    """Report whether each port has a listening socket, from `ss -tulpn`."""
    ports = list(ports)
    try:
        result = run(["ss", "-tulpn"], capture_output=True, text=True)
    except OSError as e:
        log_message(f"[HEALTH] Cannot list sockets: {e}", "WARNING")
        return {port: False for port in ports}

    local_addresses = []
    for line in result.stdout.splitlines()[1:]:
        columns = line.split()
        if len(columns) >= 5:
            local_addresses.append(columns[4])

    status = {}
    for port in ports:
        listening = any(address.endswith(f":{port}") for address in local_addresses)
        status[port] = listening
        log_message(f"[HEALTH] Port {port}: {'OK' if listening else 'NOT LISTENING (may be blocked)'}")
    return status


def check_http(url: str, timeout: float, http_get: Callable[..., requests.Response] = requests.get) -> Tuple[Optional[int], str]:
    try:
        response = http_get(url, timeout=timeout, allow_redirects=False)
        return response.status_code, ""
    except requests.RequestException as e:
        return None, str(e)


def run_health_check(config, runtime_versions: Iterable[str] = (),
                     run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                     http_get: Callable[..., requests.Response] = requests.get) -> HealthReport:
    log_message("[HEALTH] === Health Check ===")
    report = HealthReport()

    names = [config.web_service, config.database_service, config.panel_service]
    names += [fpm_service_name(config.fpm_service_template, v) for v in runtime_versions]
    for name in names:
        status = service_status(name, run)
        report.services.append(status)
        log_message(f"[HEALTH] {name}: {'OK' if status.active else 'DOWN'} ({status.state})",
                    "INFO" if status.active else "WARNING")

    web_root = destination_path(config, config.web_root)
    report.web_root_present = os.path.isdir(web_root)
    log_message(f"[HEALTH] Website files ({web_root}): {'OK' if report.web_root_present else 'MISSING'}",
                "INFO" if report.web_root_present else "WARNING")

    report.ports = check_ports(config.health_ports, run)

    report.http_status, report.http_error = check_http(config.health_url, config.health_timeout, http_get)
    if report.http_status is not None:
        log_message(f"[HEALTH] HTTP {config.health_url}: {report.http_status}")
    else:
        log_message(f"[HEALTH] HTTP {config.health_url}: no response ({report.http_error})", "WARNING")

    return report
