"""Operator CLI for an agent world."""
