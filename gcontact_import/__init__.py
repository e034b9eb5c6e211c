"""
gcontact_import - One-way Google Contacts import

Imports a user's Google contacts into a local store with deduplication,
incremental updates and reviewed group mapping suggestions.
"""

__version__ = "0.1.0"
