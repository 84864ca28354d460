"""Disk, partition and filesystem operations for the migration."""
