# =======================================================================================
# chipvault/__init__.py - Package Initialization
# =======================================================================================
"""
ChipVault - RFID chip identity, lifecycle and stock service

Issues anti-clone identities to Mifare Classic tags, tracks every chip
through its lifecycle and keeps promised stock within physical stock.
"""

__version__ = "1.0.0"
__author__ = "ChipVault Team"
