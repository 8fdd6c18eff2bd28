"""
nixhist - NixOS generation dashboard.

Browse, compare, restore, delete and pin System and Home-Manager generations.
"""

from importlib.metadata import version as _version

__version__ = _version("nixhist")
