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

import time
from typing import Callable, Tuple

from .index import log_message


def poll_until(check: Callable[[], bool], max_attempts: int, interval: float,
               sleep: Callable[[float], None] = time.sleep,
               label: str = "condition") -> Tuple[bool, int]:
    """
    Poll a check with a fixed bounded retry.

    The check is called at most max_attempts times with a fixed sleep of
    interval seconds between calls (never after the last one). An exception
    raised by the check counts as a failed attempt.

    Args:
        check: Callable returning True once the condition holds
        max_attempts: Upper bound on the number of checks
        interval: Seconds to sleep between attempts
        sleep: Sleep function (injectable for tests)
        label: Name used in log messages

    Returns:
        tuple: (succeeded, attempts_used)
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            if check():
                log_message(f"✓ {label} passed (attempt {attempt}/{max_attempts})")
                return True, attempt
        except Exception as e:
            log_message(f"{label} attempt {attempt}/{max_attempts} raised: {e}", "DEBUG")

        if attempt < max_attempts:
            log_message(f"{label} attempt {attempt}/{max_attempts} failed, waiting {interval}s...", "DEBUG")
            sleep(interval)

    log_message(f"✗ {label} failed after {max_attempts} attempts", "WARNING")
    return False, max_attempts
