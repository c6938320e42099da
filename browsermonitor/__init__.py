"""browsermonitor: observe a live browser page and dump what it did.

The package is organised the same way the monitor runs:

- connection: discover, launch and connect to a browser over CDP
- capture: console and network observers, buffers and dumps
- session: active tab tracking, commands and shutdown
- api / cli: the HTTP control surface and the command-line entry point
"""

__version__ = "1.0.0"
