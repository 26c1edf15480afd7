"""Authentication for users (identity-provider JWTs) and remote clients (API tokens)."""
