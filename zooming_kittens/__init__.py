"""zooming-kittens

Focus-driven font zoom for kitty.

This package provides a long-running daemon that:
- Maintains one IPC connection to the compositor (niri or sway) and decodes window events
- Routes focus/blur events for a tracked app id to the zoom handler
- Resolves window PIDs to the kitty process that owns the remote-control socket
- Pools remote-control connections per kitty process with retry and idle reaping

License: MIT
"""

__version__ = "0.3.0"
