"""Catalog, download, chroot and workflow services."""
