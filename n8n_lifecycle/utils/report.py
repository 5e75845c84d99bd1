"""
n8n Lifecycle Controller
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
Structured attempt reports.

Every terminal lifecycle attempt is summarized into an AttemptReport that
is written both as JSON (machine parsing) and as plain text (operators).
"""

import datetime
import json
import os
import socket
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .index import log_message


def _format_time(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return datetime.datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")


@dataclass
class AttemptReport:
    """Summary of one lifecycle attempt."""
    attempt_id: str
    command: str
    outcome: str
    started_at: float
    finished_at: Optional[float] = None
    forced: bool = False
    mode: str = ""
    current_version: str = "unknown"
    target_version: str = "unknown"
    final_version: str = "unknown"
    restore_point_id: Optional[str] = None
    restore_point_verified: Optional[bool] = None
    states: List[str] = field(default_factory=list)
    service_health: Dict[str, bool] = field(default_factory=dict)
    probe_ok: Optional[bool] = None
    rollback_health: Dict[str, bool] = field(default_factory=dict)
    pruned: List[str] = field(default_factory=list)
    offsite_object: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    hostname: str = field(default_factory=socket.gethostname)

    @property
    def succeeded(self) -> bool:
        return self.outcome in ("succeeded", "no_op")

    @property
    def status_label(self) -> str:
        return {
            "succeeded": "SUCCESS",
            "no_op": "NO-OP",
            "failed": "FAILED",
            "rolled_back": "FAILED - ROLLED BACK",
            "failed_unrecoverable": "FAILED - MANUAL INTERVENTION REQUIRED",
        }.get(self.outcome, self.outcome.upper())

    def notification_text(self) -> str:
        if self.command == "update":
            return f"n8n Update {self.status_label} - {self.current_version} → {self.target_version}"
        return f"n8n {self.command.capitalize()} {self.status_label} - {self.restore_point_id or '-'}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status_label
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def render_text(self) -> str:
        lines = [
            f"n8n {self.command.capitalize()} Report",
            "=" * len(f"n8n {self.command.capitalize()} Report"),
            "",
            f"Attempt: {self.attempt_id} ({self.command}{', forced' if self.forced else ''})",
            f"Started: {_format_time(self.started_at)}",
            f"Finished: {_format_time(self.finished_at)}",
            f"Status: {self.status_label}",
            f"Deployment Mode: {self.mode or '-'}",
            f"Old Version: {self.current_version}",
            f"Target Version: {self.target_version}",
            f"Running Version: {self.final_version}",
            f"Restore Point: {self.restore_point_id or '-'}"
            + ("" if self.restore_point_verified is None
               else f" (verified: {'yes' if self.restore_point_verified else 'NO'})"),
            "",
            f"States: {' → '.join(self.states)}",
        ]

        for title, health in (("Service Health After Update:", self.service_health),
                              ("Service Health After Rollback:", self.rollback_health)):
            if health:
                lines += ["", title]
                lines += [f"- {name}: {'healthy' if ok else 'UNHEALTHY'}" for name, ok in health.items()]

        if self.probe_ok is not None:
            lines += ["", f"Functional Probe: {'passed' if self.probe_ok else 'FAILED'}"]
        if self.pruned:
            lines += ["", f"Pruned Restore Points: {', '.join(self.pruned)}"]
        if self.offsite_object:
            lines += ["", f"Off-site Copy: {self.offsite_object}"]
        if self.errors:
            lines += ["", "Errors:"] + [f"- {error}" for error in self.errors]

        lines += ["", f"Hostname: {self.hostname}", ""]
        return "\n".join(lines)

    def write(self, report_dir: str) -> Tuple[str, str]:
        """
        Write <command>_report_<attempt>.json and .txt.

        Returns:
            tuple: (json_path, text_path)
        """
        Path(report_dir).mkdir(parents=True, exist_ok=True)
        base = os.path.join(report_dir, f"{self.command}_report_{self.attempt_id}")
        with open(f"{base}.json", 'w') as f:
            f.write(self.to_json())
        with open(f"{base}.txt", 'w') as f:
            f.write(self.render_text())
        log_message(f"{self.command.capitalize()} report generated: {base}.txt")
        return f"{base}.json", f"{base}.txt"
