"""
Directory Sync - Reconcile HR employee records with an Active Directory style directory.

This package diffs HR records against directory user entries, provisions new
accounts with their group memberships, and runs full syncs on a schedule.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
