"""Backup and restore of host resources."""
