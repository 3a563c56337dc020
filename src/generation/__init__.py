"""Tier 2 generative recommendation pipeline and its retrieval context."""
