"""walrusfox - Native messaging host and theme relay for Pywalfox.

A small local relay that:
- Runs a broker on a Unix domain socket that fans out theme commands
- Bridges the browser's stdio native-messaging channel to that broker
- Serves the current color palette to the browser extension
"""

__version__ = "0.1.0"
