"""
carddav_sync - Local contact store to CardDAV server synchronization.

Reconciles a local contact store with a remote CardDAV address book reached
through an HTTP/JSON bridge process.
"""

__version__ = "0.1.0"
