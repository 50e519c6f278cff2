"""agentworld — coordination and incentive engine for a world of autonomous agents."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("agentworld")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
