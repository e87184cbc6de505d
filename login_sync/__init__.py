"""
Login User Sync - Reconcile configured login users with system accounts.

This package keeps the Unix accounts of a router in line with the
`system login user` configuration tree, and provides a small INI based
store for per-feature configuration files.
"""

__version__ = "1.0.0"
__author__ = "Login Sync Team"
