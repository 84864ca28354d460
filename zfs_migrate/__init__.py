"""Migrate an installed ext4 Linux root filesystem to a ZFS root pool in place."""

from .__version__ import __version__

__all__ = ["__version__"]
