"""Configuration loading for zfs-migrate."""
