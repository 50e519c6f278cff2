"""LLM providers used by decision functions."""
