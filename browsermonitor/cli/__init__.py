"""Command-line interface for browsermonitor.

Commands:
- open: launch a browser with a project profile and monitor it
- join: attach to a running browser with remote debugging enabled
- show-config: print the effective configuration
- version: show version information
"""

from .config import ConfigurationLoader, MonitorConfiguration, load_configuration, print_configuration
from .runner import ExitCode, MonitorRunner

__all__ = [
    "ConfigurationLoader",
    "MonitorConfiguration",
    "load_configuration",
    "print_configuration",
    "ExitCode",
    "MonitorRunner",
]
