"""identity_bridge — Exchanges Clerk identity tokens for chat-platform session cookies."""
