"""
Raabta — end-to-end encrypted message sync for peer-to-peer chat.

Two transports, one inbox. Messages travel as opaque ciphertext over
a federated relay network or a direct peer link, and land exactly
once in the local store.
"""

import os

__version__ = "0.1.0"

RAABTA_HOME = os.environ.get("RAABTA_HOME", "~/.raabta")
