"""ZFS pool, dataset and swap volume handling."""
