"""
Runner Updater: safe in-place upgrades of a self-hosted CI runner.

The updater drains in-flight work, snapshots the runner's registration and
credential files, replaces its binaries, and verifies the runner comes back
healthy, rolling back to the previous version when it does not.
"""

__version__ = "0.1.0"
