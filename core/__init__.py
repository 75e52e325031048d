"""Core module - configuration, errors, persistence, mapping and security.

Shared by the connectors, stores and sync engine. Nothing here talks to
DevPos or QuickBooks directly; that belongs in /connectors/.
"""

__version__ = "1.0.0"
