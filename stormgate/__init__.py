"""
Storm Gate

User management and authentication gateway: local accounts with an admin
approval workflow, Microsoft Entra ID sign-in and internally signed tokens.
"""

__version__ = "1.0.0"
