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

import requests

from .index import log_message


class Notifier:
    """Fire-and-forget webhook sink. Failures are logged, never raised."""

    def __init__(self, webhook_url: str = "", timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def send(self, message: str) -> bool:
        if not self.enabled:
            log_message(f"Notification (no webhook configured): {message}", "DEBUG")
            return False
        try:
            response = requests.post(self.webhook_url, json={"text": message}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            log_message(f"Failed to send notification: {e}", "WARNING")
            return False
        log_message("Notification sent", "DEBUG")
        return True
