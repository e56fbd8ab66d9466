"""
Relay Reconcile
---------------

Idempotent provisioning, teardown and diagnostics for a single-node IPFS
Kubo relay published through an nginx reverse proxy with TLS and HTTP Basic
Authentication.
"""

APP_NAME = "Relay Reconcile"
APP_SUBTITLE = "IPFS Kubo Relay Provisioning"
VERSION = "0.3.0"

__version__ = VERSION
