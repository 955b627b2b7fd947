"""
AT Protocol Integration

This package implements the client side of the AT Protocol calls Resonance
needs, against whichever Personal Data Server (PDS) hosts a handle.

Key Components:
- pds.py: Suffix based handle to PDS routing and XRPC method names
- chain.py: Middleware chain for requests (redirect following, metrics)
- errors.py: Error taxonomy, result models and server error classification
- session.py: Session creation, token refresh and logout
- records.py: Record key generation and record publishing
- accounts.py: Handle/password generation and account provisioning

Key Features:
- POST redirects are followed with the same method and body, bounded hops
- Bearer tokens are attached per request
- Expired access tokens are refreshed once, then the publish is retried once
- Generated handles are retried on collisions with jittered backoff
"""
