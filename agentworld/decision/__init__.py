"""Agent decisions — what an autonomous agent wants to do next.

The decision function is opaque. Its output is only trusted as far as
`normalize_decision` lets it: the action must be in the allowed set
and numeric fields are clamped.
"""
