"""Authentication: passwords, tokens, roles."""
