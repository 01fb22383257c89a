"""
CAS Package

Central Authentication Service support. Ticket validation is delegated to
python-cas; this package lands tickets, normalizes the CAS user into the
common session shape and handles logout and single logout.
"""

from .protocol import CasProtocol

__all__ = [
    "CasProtocol",
]
