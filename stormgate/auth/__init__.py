"""
Authentication Package

This package handles authentication and authorization for the gateway using
Microsoft Entra ID (OpenID Connect) and internally signed tokens.

Key responsibilities:
- OIDC Authorization Code + PKCE login flow with Azure AD
- ID/access token validation using JWKS from Microsoft Entra ID
- Internal access/refresh/approval/reset token issuance and validation
- Dual-mode bearer authentication and role checks for routes

Modules:
- routes: /auth/* endpoints (login, callback, refresh, logout, me, approvals)
- oidc: OIDC session store and flow controller
- utils: JWKS fetching, caching and federated token verification
- session: Internal token service and refresh token store
- dependencies: FastAPI dependencies for authenticated routes

The authentication flow:
1. Client initiates login via /auth/login
2. User authenticates with Microsoft Entra ID
3. Gateway receives the authorization code via /auth/callback
4. Gateway exchanges it, verifies the ID token and resolves the local account
5. Gateway issues internal access and refresh tokens
"""
