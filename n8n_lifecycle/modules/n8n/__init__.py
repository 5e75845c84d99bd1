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
n8n Stack Module

Declares the n8n service sets (basic and production), their health
contracts and the in-container commands used for exports and probes.
"""

from .index import (
    MODULE_CONFIG,
    build_service_set,
    detect_deployment_mode,
    get_stack_config,
    load_module_config,
    resolve_service_set
)
