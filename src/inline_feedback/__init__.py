"""Line-anchored review comments kept in a shared, lock-protected project store.

This package contains:
- The store: versioned JSON document with atomic writes and a lock file
- The reconciler: relocates comment anchors after their files are edited
- Front-ends (CLI and MCP server) built on the shared operations module
"""

__version__ = "0.1.0"
