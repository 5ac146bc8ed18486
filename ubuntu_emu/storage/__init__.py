"""Disk image, partitioning and boot asset handling."""
