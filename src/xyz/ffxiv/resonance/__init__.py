"""
Resonance - AT Protocol sync core for FFXIV mod sharing clients

This package lets sync clients publish character data to the AT Protocol
network. It authenticates a handle against the PDS that hosts it, keeps the
session tokens fresh, provisions throwaway or user-named accounts, and writes
records into the user's repository.

Key Components:
- atproto: AT Protocol client core (PDS routing, request chain, sessions,
  record publishing, account provisioning)
- app: Local gateway server, configuration, metrics and command line tools

Architecture Overview:
1. Account Provisioning (optional):
   - Generate a handle, check that it does not resolve, create the account
   - Retry generated handles on collisions, with backoff, up to a bound

2. Authentication:
   - Route the handle to its PDS by domain suffix
   - Create a session and keep the token pair, DID and canonical handle

3. Publishing:
   - Write records with timestamp based keys
   - Refresh the session once when the access token has expired

Every outbound request follows redirects without downgrading POST to GET and
carries its credentials per request, never on the shared HTTP session.
"""
