"""
Authentication and session trust.

Federated login (leaves first):
- nonce.py: per-attempt anti-replay nonces stored in Redis
- keyset.py: identity provider public keys, cached in Redis for a fixed TTL
- id_token.py: identity token signature and claim verification
- exchange.py: authorization code to identity token exchange
- linker.py: verified subject to local user mapping

Local sessions:
- session_token.py: HS256 session token minting and decoding
- denylist.py: revoked jti store
- authenticator.py: bearer token to user resolution for protected endpoints
- refresh.py: denylist-then-issue token rotation
- passwords.py: email and password accounts

Failures are `errors.AuthError` instances tagged with an `ErrorKind`.
"""
