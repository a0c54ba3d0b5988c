"""
Larder Gate - Authentication and Session Trust

This package implements the authentication layer of the Larder service. Every other Larder API
(ingredients, recipes, shopping lists, background jobs) trusts the bearer tokens minted here and
nothing else.

Key Components:
- app: Web application layer with request handlers, middleware and configuration
- auth: Token verification, account linking, token issuance, revocation and rotation
- model: Database models for local users, external identities and revoked tokens

Architecture Overview:
1. Federated Login:
   - Client requests a nonce and signs in with the chat platform identity provider
   - The identity token (or an authorization code exchanged for one) is verified against the
     provider's published key set
   - The provider subject is mapped to a local user, provisioning one on first login

2. Local Login:
   - Email and password sign-up and sign-in, sharing the same token issuer

3. Session Trust:
   - Signed bearer tokens carry a unique token id (jti), the unit of revocation
   - Every protected call verifies the token and consults the shared denylist
   - Refresh denylists the presented token before minting its replacement
"""
