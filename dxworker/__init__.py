"""
dxworker - DistributeX compute worker agent
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("distributex-worker")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
__logo__ = "⚙️"
