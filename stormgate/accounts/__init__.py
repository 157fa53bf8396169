"""
Accounts Package

Local user accounts and their lifecycle.

Modules:
- store: User record store interface and in-memory implementation
- credentials: bcrypt password hashing, local login and password reset
- approval: PENDING / APPROVED / DENIED workflow and registration
- resolver: Federated identity to local account mapping
- routes: /register, /login, /check-status, password reset, admin listing
"""
