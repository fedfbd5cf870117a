"""Maintenance scripts for the local cache."""
