"""
BullionDesk: backup and multi-device reconciliation for a bullion ledger.

Encrypted exports, a content-addressed object store, and a
conflict-free merge that reconciles records created on
independently operated installations.
"""

import os

__version__ = "0.1.0"
__author__ = "BullionDesk"

BULLIONDESK_HOME = os.environ.get("BULLIONDESK_HOME", "~/.bulliondesk")
